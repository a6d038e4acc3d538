"""Entry point for running finmail as a module.

Usage:
    python -m finmail validate-config
    python -m finmail serve
    python -m finmail --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from finmail.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
