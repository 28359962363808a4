from agent_browser.cli import main

main()
