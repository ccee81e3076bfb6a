from creditline_cli.wallet_cmd import main

main()
