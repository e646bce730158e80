"""Allow ``python -m memex``."""

from memex.cli import app

if __name__ == "__main__":
    app()
