"""Entry point for running migrations as a module.

Usage:
    python -m deployer.db.migrations plan
    python -m deployer.db.migrations migrate
    python -m deployer.db.migrations status
    python -m deployer.db.migrations validate
"""

from .cli import main

if __name__ == "__main__":
    main()
