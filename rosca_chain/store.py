"""
Local persistence of known circles, backed by LevelDB.

The ledger is the source of truth. The store only remembers which output
currently holds each circle's state, and which outputs it superseded, so
a client can resume after a restart without scanning the ledger.
"""
import struct
import logging
from contextlib import contextmanager
from typing import Optional, Iterator

import msgpack
import plyvel

from .core import OutputRef

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

HEAD_PREFIX = b'head:'
HISTORY_PREFIX = b'hist:'


class DB:
    def __init__(self, db_path: str, create_if_missing: bool = True,
                 write_buffer_size: int = 4 * 1024 * 1024,
                 max_open_files: int = 100):
        """
        Open a LevelDB database.

        Args:
            db_path: Path to database directory
            create_if_missing: Create database if it doesn't exist
            write_buffer_size: Size of write buffer
            max_open_files: Maximum number of open files
        """
        try:
            self._db = plyvel.DB(
                db_path,
                create_if_missing=create_if_missing,
                write_buffer_size=write_buffer_size,
                max_open_files=max_open_files,
            )
            self._closed = False
            logger.info(f"Database opened at {db_path}")
        except Exception as e:
            logger.error(f"Failed to open database at {db_path}: {e}")
            raise

    def _ensure_open(self):
        if self._closed:
            raise RuntimeError("Database is closed")

    def get(self, key: bytes) -> Optional[bytes]:
        """
        Get value by key.

        Returns None if key doesn't exist.
        """
        self._ensure_open()
        return self._db.get(key)

    def put(self, key: bytes, value: bytes):
        """Put a key-value pair."""
        self._ensure_open()
        self._db.put(key, value)

    def delete(self, key: bytes):
        """Delete a key."""
        self._ensure_open()
        self._db.delete(key)

    @contextmanager
    def write_batch(self):
        """
        Context manager for batch writes.

        Example:
            with db.write_batch() as batch:
                batch.put(b'key1', b'value1')
                batch.put(b'key2', b'value2')
        """
        self._ensure_open()
        batch = self._db.write_batch()
        try:
            yield batch
            batch.write()
        except Exception as e:
            logger.error(f"Error in batch write: {e}")
            raise

    def iterator(self, prefix: bytes) -> Iterator[tuple[bytes, bytes]]:
        """Iterate (key, value) pairs whose key starts with ``prefix``."""
        self._ensure_open()
        return self._db.iterator(prefix=prefix)

    def close(self):
        """Close the database."""
        if not self._closed:
            self._db.close()
            self._closed = True
            logger.info("Database closed")

    def is_closed(self) -> bool:
        return self._closed

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class CircleStore:
    """Head reference and superseded references per circle."""

    def __init__(self, db: DB):
        self.db = db

    @staticmethod
    def _head_key(circle_id: bytes) -> bytes:
        return HEAD_PREFIX + circle_id

    @staticmethod
    def _history_key(circle_id: bytes, seq: int) -> bytes:
        return HISTORY_PREFIX + circle_id + struct.pack('>Q', seq)

    def put_head(self, circle_id: bytes, ref: OutputRef, state: bytes):
        """Record ``ref`` as the circle's current output, archiving the previous head."""
        previous = self.db.get(self._head_key(circle_id))
        seq = 0
        with self.db.write_batch() as batch:
            if previous is not None:
                prev = msgpack.unpackb(previous, raw=False)
                seq = prev['seq'] + 1
                batch.put(
                    self._history_key(circle_id, prev['seq']),
                    msgpack.packb({'ref': prev['ref'], 'state': prev['state']}, use_bin_type=True),
                )
            batch.put(
                self._head_key(circle_id),
                msgpack.packb({'ref': str(ref), 'state': state, 'seq': seq}, use_bin_type=True),
            )
        logger.debug(f"Circle {circle_id.hex()[:16]} head -> {ref}")

    def get_head(self, circle_id: bytes) -> Optional[tuple[OutputRef, bytes]]:
        raw = self.db.get(self._head_key(circle_id))
        if raw is None:
            return None
        head = msgpack.unpackb(raw, raw=False)
        return OutputRef.parse(head['ref']), head['state']

    def history(self, circle_id: bytes) -> list[tuple[OutputRef, bytes]]:
        """Superseded (ref, state) pairs, oldest first."""
        entries = []
        for _, value in self.db.iterator(HISTORY_PREFIX + circle_id):
            entry = msgpack.unpackb(value, raw=False)
            entries.append((OutputRef.parse(entry['ref']), entry['state']))
        return entries

    def list_circles(self) -> list[bytes]:
        return [key[len(HEAD_PREFIX):] for key, _ in self.db.iterator(HEAD_PREFIX)]

    def forget(self, circle_id: bytes):
        with self.db.write_batch() as batch:
            batch.delete(self._head_key(circle_id))
            for key, _ in self.db.iterator(HISTORY_PREFIX + circle_id):
                batch.delete(key)
