"""
Display Number Sequences

Race-safe counters behind human-readable ids such as ``LOAN0007`` and
``FIN0012``. Each counter lives in its own storage record and is incremented
inside an atomic scope, so two concurrent creations can never be handed the
same number.
"""

from datetime import datetime, timezone

from .storage import StorageInterface


class SequenceGenerator:
    """Monotonic named counters backed by storage"""

    def __init__(self, storage: StorageInterface, table_name: str = "sequences"):
        self.storage = storage
        self.table_name = table_name

    def next_value(self, name: str) -> int:
        """Allocate and return the next value of a counter, starting at 1"""
        with self.storage.atomic():
            record = self.storage.load(self.table_name, name)
            value = (record['value'] if record else 0) + 1
            self.storage.save(self.table_name, name, {
                'id': name,
                'value': value,
                'updated_at': datetime.now(timezone.utc).isoformat()
            })
        return value

    def current_value(self, name: str) -> int:
        """Last allocated value of a counter, 0 when unused"""
        record = self.storage.load(self.table_name, name)
        return record['value'] if record else 0

    def next_display_number(self, name: str, prefix: str, width: int = 4) -> str:
        """Allocate the next display number, e.g. ``LOAN0001``"""
        return format_display_number(prefix, self.next_value(name), width)


def format_display_number(prefix: str, value: int, width: int = 4) -> str:
    return f"{prefix}{value:0{width}d}"
