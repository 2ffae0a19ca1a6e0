from importlib import metadata
from pathlib import Path

VERSION_FILE = Path(__file__).parent.resolve().with_name('VERSION')


def get_version() -> str:
  # Wheels do not ship the VERSION file at the project root.
  if VERSION_FILE.is_file():
    return VERSION_FILE.read_text().strip()
  return metadata.version('imgthumb')


version = get_version()
