"""Allow ``python -m agent_teams``."""

from agent_teams.cli import main

if __name__ == "__main__":
    main()
