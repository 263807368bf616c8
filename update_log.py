"""In-memory journal of container recreation attempts."""

import threading
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List

STATUS_IN_PROGRESS = 'in-progress'
STATUS_SUCCESS = 'success'
STATUS_FAILED = 'failed'


@dataclass
class UpdateLogEntry:
    """One recreation attempt; status moves from in-progress to success or failed."""
    id: str
    timestamp: str
    container_name: str
    old_image: str
    old_image_id: str
    new_image: str
    new_image_id: str = ''
    status: str = STATUS_IN_PROGRESS
    message: str = ''

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        return {
            'id': d['id'],
            'timestamp': d['timestamp'],
            'containerName': d['container_name'],
            'oldImage': d['old_image'],
            'oldImageId': d['old_image_id'],
            'newImage': d['new_image'],
            'newImageId': d['new_image_id'],
            'status': d['status'],
            'message': d['message'],
        }


class UpdateLogRecorder:
    """Newest-first list of UpdateLogEntry, retained until cleared."""

    def __init__(self):
        self._entries: List[UpdateLogEntry] = []
        self._next_id = 1
        self._lock = threading.Lock()

    def start(self, container_name: str, old_image: str, old_image_id: str,
              new_image: str, message: str) -> UpdateLogEntry:
        with self._lock:
            entry = UpdateLogEntry(
                id=str(self._next_id),
                timestamp=datetime.now(timezone.utc).isoformat(),
                container_name=container_name,
                old_image=old_image,
                old_image_id=old_image_id,
                new_image=new_image,
                message=message,
            )
            self._next_id += 1
            self._entries.insert(0, entry)
        return entry

    def succeed(self, entry: UpdateLogEntry, message: str, new_image_id: str = '') -> None:
        with self._lock:
            entry.status = STATUS_SUCCESS
            entry.message = message
            if new_image_id:
                entry.new_image_id = new_image_id

    def fail(self, entry: UpdateLogEntry, message: str) -> None:
        with self._lock:
            entry.status = STATUS_FAILED
            entry.message = message

    def entries(self, limit: int = 50) -> List[UpdateLogEntry]:
        with self._lock:
            return list(self._entries[:limit])

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
