"""
daytrace: your day, as a timeline.

Usage:
  python -m daytrace run
  python -m daytrace cards
  python -m daytrace doctor
"""
from daytrace.cli.app import app

if __name__ == "__main__":
    app()
