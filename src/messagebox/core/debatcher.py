"""
Debatcher: splits a source batch into independent messages.
"""

import logging
from typing import Iterator, List, Sequence

from .exceptions import PartialWriteError
from .message_store import MessageStore
from .models import AdapterRole, Record
from .payload import validate_record


logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000


class Debatcher:
    """
    Writes a record batch to the MessageBox one message per record.

    Records are handed to the store in chunks of ``batch_size`` to bound the
    work per call. Chunking has no durability meaning: every message stands
    alone, and a failure in a later chunk leaves earlier messages persisted.

    Example:
        >>> debatcher = Debatcher(message_box, batch_size=500)
        >>> ids = debatcher.write("orders", "csv", AdapterRole.SOURCE,
        ...                       instance_id, headers, records)
    """

    def __init__(self, message_store: MessageStore, batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.message_store = message_store
        self.batch_size = batch_size

    def _chunks(self, records: Sequence[Record]) -> Iterator[Sequence[Record]]:
        for start in range(0, len(records), self.batch_size):
            yield records[start:start + self.batch_size]

    def write(
        self,
        interface_name: str,
        adapter_name: str,
        role: AdapterRole,
        adapter_instance_id: str,
        headers: Sequence[str],
        records: Sequence[Record],
    ) -> List[str]:
        """
        Persist every record as its own Pending message.

        Args:
            interface_name: Interface the messages belong to
            adapter_name: Producing adapter name
            role: Role of the producing adapter
            adapter_instance_id: Producing adapter instance
            headers: Column names shared by every record
            records: Records to debatch

        Returns:
            Message IDs in input order

        Raises:
            SchemaMismatchError: if any record does not match the headers;
                nothing is written
            PartialWriteError: if the store fails partway; indexes and
                persisted IDs cover the whole input, not just the chunk
        """
        records = list(records)
        for index, record in enumerate(records):
            validate_record(headers, record, index)

        message_ids: List[str] = []

        for chunk in self._chunks(records):
            try:
                chunk_ids = self.message_store.write(
                    interface_name,
                    adapter_name,
                    role,
                    adapter_instance_id,
                    headers,
                    chunk,
                )
            except PartialWriteError as e:
                raise PartialWriteError(
                    str(e),
                    persisted_ids=message_ids + e.persisted_ids,
                    failed_index=len(message_ids) + e.failed_index,
                    total_records=len(records),
                ) from e
            message_ids.extend(chunk_ids)

        logger.info(
            f"Debatched {len(message_ids)} records into interface {interface_name} "
            f"(batch size {self.batch_size})"
        )
        return message_ids
