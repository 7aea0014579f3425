"""
Maintenance flag - a file whose presence pauses the miner.

The reset flow (or an operator) creates it, the miner sees it at the top of
its next cycle, releases the ledger and idles until the file is gone.
"""

from pathlib import Path


class MaintenanceFlag:

    def __init__(self, path: Path):
        self.path = Path(path)

    def is_set(self) -> bool:
        return self.path.exists()

    def message(self) -> str:
        try:
            return self.path.read_text().strip()
        except FileNotFoundError:
            return ""

    def set(self, message: str = "maintenance"):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(message)

    def clear(self):
        self.path.unlink(missing_ok=True)
