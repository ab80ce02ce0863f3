from copimon.client.cli import main

main()
