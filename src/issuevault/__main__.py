"""
Entry point for running issuevault as a module.

Usage:
    python -m issuevault [command] [options]
"""

from issuevault.cli import main

if __name__ == "__main__":
    main()
