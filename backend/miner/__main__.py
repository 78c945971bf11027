from miner.main import main

main()
