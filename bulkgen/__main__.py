"""Enables execution via: python -m bulkgen"""

from bulkgen.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
