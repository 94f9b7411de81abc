"""Shared test fixtures and factories."""

import sys
import textwrap
from pathlib import Path

import pytest

from demon.config.models import (
    DemonConfig,
    ExecutorConfig,
    GatewayConfig,
    PathsConfig,
    SchedulerConfig,
)
from demon.config.paths import ENV_VAR, DemonPaths, get_demon_home
from demon.jobs.store import JobStore

# Stand-in for the assistant CLI. Behaviour is driven by ``key=value`` words
# in the prompt (read from stdin):
#   turns=N      emit N assistant messages (default 1)
#   cost=X       total_cost_usd in the result (default 0.01)
#   sleep=S      sleep before the result
#   fail         exit 1 with "boom" on stderr and no result
#   fail_resume  like fail, but only when --resume is passed
#   echo_args    result text is the JSON-encoded argv
FAKE_CLAUDE = textwrap.dedent(
    """
    import json
    import sys
    import time

    prompt = sys.stdin.read()
    opts = {}
    for word in prompt.split():
        key, _, value = word.partition("=")
        opts[key] = value
    args = sys.argv[1:]
    resumed = "--resume" in args
    session = args[args.index("--resume") + 1] if resumed else "sess-new"

    if "fail" in opts or ("fail_resume" in opts and resumed):
        sys.stderr.write("boom\\n")
        sys.exit(1)


    def emit(event):
        print(json.dumps(event), flush=True)


    emit({"type": "system", "subtype": "init", "session_id": session})
    turns = int(opts.get("turns") or 1)
    for i in range(turns):
        emit(
            {
                "type": "assistant",
                "session_id": session,
                "message": {
                    "id": f"msg_{i}",
                    "content": [{"type": "text", "text": f"turn {i} "}],
                },
            }
        )
    time.sleep(float(opts.get("sleep") or 0))
    text = json.dumps(args) if "echo_args" in opts else "done: " + prompt.strip()
    emit(
        {
            "type": "result",
            "subtype": "success",
            "is_error": False,
            "result": text,
            "total_cost_usd": float(opts.get("cost") or 0.01),
            "num_turns": turns,
            "session_id": session,
        }
    )
    """
)


@pytest.fixture(autouse=True)
def demon_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point DEMON_HOME at a temporary directory for every test."""
    home = tmp_path / "home"
    monkeypatch.setenv(ENV_VAR, str(home))
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
    get_demon_home.cache_clear()
    yield home
    get_demon_home.cache_clear()


@pytest.fixture
def paths(demon_home: Path) -> DemonPaths:
    demon_paths = DemonPaths(demon_home)
    demon_paths.ensure()
    return demon_paths


@pytest.fixture
def store(paths: DemonPaths) -> JobStore:
    job_store = JobStore(paths)
    job_store.load()
    return job_store


@pytest.fixture
def fake_claude(tmp_path: Path) -> Path:
    script = tmp_path / "fake_claude.py"
    script.write_text(FAKE_CLAUDE)
    return script


@pytest.fixture
def executor_config(fake_claude: Path) -> ExecutorConfig:
    return ExecutorConfig(
        command=[sys.executable, str(fake_claude)],
        timeout_secs=20,
        kill_grace_secs=1,
    )


@pytest.fixture
def config(demon_home: Path, executor_config: ExecutorConfig) -> DemonConfig:
    return DemonConfig(
        paths=PathsConfig(base_dir=demon_home),
        executor=executor_config,
        scheduler=SchedulerConfig(tick_secs=0.05, timezone="UTC", shutdown_grace_secs=5),
    )


@pytest.fixture
def gateway_config() -> GatewayConfig:
    return GatewayConfig(
        enabled=True,
        bot_token="123456789:ABCdefGHIjklMNOpqrSTUvwxYZ0123456789",
        allowed_chat_ids=[42, -100],
        typing_indicator=False,
    )


@pytest.fixture
def cli_runner():
    """Create a Typer CLI test runner with colors disabled."""
    from typer.testing import CliRunner

    return CliRunner(env={"NO_COLOR": "1"})
