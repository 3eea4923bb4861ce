"""`python -m pns_sync.cli` runs the resync command."""

from pns_sync.cli.resync import main

if __name__ == "__main__":
    raise SystemExit(main())
