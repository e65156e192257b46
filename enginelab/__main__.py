"""
enginelab CLI Entry Point

This module allows running enginelab as:
    python -m enginelab [command] [options]
"""

from enginelab.cli import main

if __name__ == "__main__":
    main()
