#!/usr/bin/env python3
"""CLI entry point for bibdedup command.

Imports records, deduplicates them and checks dedup group consistency.
"""

import sys


def main() -> None:
    """Entry point for bibdedup command."""
    from bibdedup.pipeline import main as pipeline_main

    sys.exit(pipeline_main())


if __name__ == "__main__":
    main()
