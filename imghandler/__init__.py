"""On-demand image transformation served from a Lambda function."""

from pathlib import Path

VERSION_FILE = Path(__file__).resolve().with_name('VERSION')


def get_version() -> str:
  return VERSION_FILE.read_text().strip()


version = get_version()
