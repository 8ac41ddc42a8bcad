from chatload.cli import main

main()
