"""Entry point for running the tracker as a module.

Usage:
    python -m jobtracker validate-config
    python -m jobtracker --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from jobtracker.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
