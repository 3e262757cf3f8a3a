from agentmeter.cli import main

main()
