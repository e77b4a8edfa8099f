from __future__ import annotations

from bountybot.cli import main


if __name__ == "__main__":
    main()
