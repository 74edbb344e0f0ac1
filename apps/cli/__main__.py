# apps/cli/__main__.py
from apps.cli import app

if __name__ == "__main__":
    app()
