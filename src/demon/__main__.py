from demon.cli.app import main

main()
