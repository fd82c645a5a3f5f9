from taskrelay.cli import main

main()
