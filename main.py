"""
main.py: launcher for running gym-sniper from a source checkout.

    python main.py snipe 76014
    python main.py serve

Equivalent to the installed `gym-sniper` command. See gym_sniper/cli.py for
the commands and gym_sniper/app.py for the HTTP API.
"""

from __future__ import annotations

import sys

from gym_sniper.cli import main


if __name__ == "__main__":
    sys.exit(main())
