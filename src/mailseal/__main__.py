#!/usr/bin/env python3
"""
Allow running mailseal as a module: python -m mailseal

Which is equivalent to:
    mailseal COMMAND [OPTIONS]
"""

from mailseal.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
