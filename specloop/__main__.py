"""Allow running the CLI via ``python -m specloop``."""

from specloop.cli import main

if __name__ == "__main__":
    main()
