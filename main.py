"""
CareAlert — Entry Point.

Single entry point: `python main.py` starts the reminder scheduler and the
alert/reminder notification core.
"""

from carealert.app import main

if __name__ == "__main__":
    main()
