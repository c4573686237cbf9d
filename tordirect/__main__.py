"""Allow ``python -m tordirect``."""

from __future__ import annotations

from tordirect.cli.main import main

if __name__ == "__main__":
    main()
