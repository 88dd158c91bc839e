"""
Buffer Handler Module

Buffers rows headed for one table and writes them as batched
``INSERT ... ON DUPLICATE KEY UPDATE`` statements.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from .base import DatabaseConfig
from .query_builder import ConflictAction, QueryBuilder

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_LIMIT = 2500


class RowBuffer:
    """
    Handles buffering and flushing of pending rows (the "pile").

    Usage:
        buffer = RowBuffer(db, 'people', auto_increment_columns=['id'])
        buffer.add_row({'id': None, 'name': 'Ana'})   # Auto-flushes at threshold
        buffer.flush()                                # Write whatever is left
    """

    def __init__(
        self,
        db: DatabaseConfig,
        table: str,
        auto_increment_columns: Sequence[str] = (),
        buffer_limit: int = DEFAULT_BUFFER_LIMIT
    ):
        """
        Initialize buffer handler.

        Args:
            db: Connection the rows are written through
            table: Target table
            auto_increment_columns: Columns kept with LAST_INSERT_ID() on duplicates
            buffer_limit: Number of rows before auto-flush
        """
        self.db = db
        self.table = table
        self.auto_increment_columns = list(auto_increment_columns)
        self.buffer_limit = buffer_limit

        self.buffer: List[Dict[str, Any]] = []
        self.flush_count = 0
        self.total_flushed = 0
        self.affected_rows = 0

    def __len__(self) -> int:
        return len(self.buffer)

    def add_row(self, row: Dict[str, Any]) -> int:
        """
        Add a row (keyed by column name) to the buffer.

        Returns:
            Rows affected by an automatic flush, or 0 if none happened
        """
        self.buffer.append(row)
        return self.flush_if_needed()

    def last_row(self) -> Optional[Dict[str, Any]]:
        return self.buffer[-1] if self.buffer else None

    def should_flush(self) -> bool:
        """Check if buffer has reached the flush threshold."""
        return len(self.buffer) >= self.buffer_limit

    def flush(self) -> int:
        """
        Write the buffer as one batched upsert and clear it.

        Rows that cannot be sanitized are dropped from the statement, and a
        buffer where no row survives is discarded without a write. On a
        database error the buffer is kept and the error propagates.

        Returns:
            Number of rows affected, as reported by the connection
        """
        if not self.buffer:
            return 0

        data_to_flush = self.buffer.copy()
        columns = list(data_to_flush[0].keys())
        values = QueryBuilder.render_rows(self.table, columns, data_to_flush, self.db.escape_string)

        if not values:
            logger.warning(f"Discarding {len(data_to_flush)} rows for {self.table}: none passed sanitization")
            self.buffer.clear()
            return 0

        try:
            query = QueryBuilder.insert_values(
                self.table,
                columns,
                values,
                on_duplicate=ConflictAction.UPDATE,
                auto_increment_columns=self.auto_increment_columns,
            )
            self.db.execute(query)
        except Exception as e:
            logger.error(f"Rows not committed to {self.table}: {e}")
            raise

        affected = self.db.affected_rows

        self.buffer.clear()
        self.flush_count += 1
        self.total_flushed += len(values)
        self.affected_rows += affected

        logger.debug(f"Committed {len(values)} rows to {self.table} (flush #{self.flush_count})")
        return affected

    def flush_if_needed(self) -> int:
        """
        Flush buffer if threshold reached.

        Returns:
            Number of rows affected, or 0 if no flush needed
        """
        if self.should_flush():
            return self.flush()
        return 0

    def clear(self) -> None:
        """Discard pending rows."""
        self.buffer.clear()

    def get_stats(self) -> Dict[str, Any]:
        """
        Get buffer statistics.

        Returns:
            Dictionary with buffer stats
        """
        return {
            'table': self.table,
            'current_buffer_size': len(self.buffer),
            'buffer_limit': self.buffer_limit,
            'flush_count': self.flush_count,
            'total_flushed': self.total_flushed,
            'affected_rows': self.affected_rows,
        }
