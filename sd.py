#!/usr/bin/env python3
"""
supplyDesk CLI entrypoint (sd.py)

Record validation and duplicate detection for supply-chain data.

This file delegates to the supplyDesk CLI layer.
"""
from supplydesk.cli.sd_cli import main

if __name__ == "__main__":
    main()
