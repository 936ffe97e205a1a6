#!/usr/bin/env python3
"""Start the local Fiber devnet. See ``devnet.supervisor`` for options."""

from devnet.supervisor import cli

if __name__ == "__main__":
    cli()
