import os

from dotenv import load_dotenv

from memoria.cli.commands import app

# Load .env file from ~/.memoria/ if it exists
# Precedence: existing env vars > .env file (override=False)
load_dotenv(os.path.expanduser("~/.memoria/.env"), override=False)

if __name__ == "__main__":
    app()
