"""
Bounded, disk-mirrored cache of Hyperbridge relay packets and receipts.

Both collections are kept most-recent-first and truncated to `max_entries`.
A single relay callback stream writes; HTTP handlers read. Writers replace
the list objects instead of mutating them, so a reader always holds a
consistent snapshot without locking.

Every mutation asks a single background writer to persist the snapshot. The
request queue holds at most one pending request, so bursts of pushes collapse
into one write, and each write lands in a temporary file that is renamed over
the snapshot file so it is never torn.
"""

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import DecodeError
from ..models import PacketRecord

logger = logging.getLogger(__name__)


class PacketCache:
    """Most-recent-first packet and receipt log with coalesced persistence."""

    def __init__(self, cache_file: Path, max_entries: int = 256):
        """
        Initialize the packet cache.

        Args:
            cache_file: Path of the JSON snapshot file
            max_entries: Maximum number of packets (and of receipts) to keep
        """
        self.cache_file = Path(cache_file)
        self.max_entries = max_entries

        self._packets: List[PacketRecord] = []
        self._receipts: List[PacketRecord] = []
        self._last_packet_height = 0
        self._last_receipt_height = 0

        # maxsize=1: a pending request already covers any later mutation
        self._persist_requests: asyncio.Queue[None] = asyncio.Queue(maxsize=1)
        self._writer_task: Optional[asyncio.Task] = None
        self._stopping = False
        self.writes_completed = 0

    def hydrate_from_disk(self) -> None:
        """Load the last snapshot; a missing file is not an error."""
        try:
            data = json.loads(self.cache_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to hydrate packet cache from {self.cache_file}: {e}")
            return

        try:
            self._packets = [PacketRecord.from_dict(item) for item in data.get("packets", [])][: self.max_entries]
            self._receipts = [PacketRecord.from_dict(item) for item in data.get("receipts", [])][: self.max_entries]
            self._last_packet_height = int(data.get("lastPacketHeight", 0) or 0)
            self._last_receipt_height = int(data.get("lastReceiptHeight", 0) or 0)
        except (AttributeError, TypeError, ValueError, DecodeError) as e:
            logger.warning(f"Ignoring malformed packet cache {self.cache_file}: {e}")
            self._packets, self._receipts = [], []
            self._last_packet_height = self._last_receipt_height = 0
            return

        logger.info(
            f"Loaded cached Hyperbridge packets: {len(self._packets)} packets, "
            f"{len(self._receipts)} receipts"
        )

    def push_packet(self, record: PacketRecord) -> None:
        self._packets = [record, *self._packets][: self.max_entries]
        if record.height:
            self._last_packet_height = max(self._last_packet_height, record.height)
        self._request_persist()

    def push_receipt(self, record: PacketRecord) -> None:
        self._receipts = [record, *self._receipts][: self.max_entries]
        if record.height:
            self._last_receipt_height = max(self._last_receipt_height, record.height)
        self._request_persist()

    def list_packets(self, limit: Optional[int] = None) -> List[PacketRecord]:
        return self._packets[:limit]

    def list_receipts(self, limit: Optional[int] = None) -> List[PacketRecord]:
        return self._receipts[:limit]

    @property
    def last_packet_height(self) -> int:
        return self._last_packet_height

    @property
    def last_receipt_height(self) -> int:
        return self._last_receipt_height

    def snapshot(self) -> Dict[str, Any]:
        """JSON-ready snapshot, also the on-disk format."""
        packets, receipts = self._packets, self._receipts
        return {
            "packets": [record.to_dict() for record in packets],
            "receipts": [record.to_dict() for record in receipts],
            "lastPacketHeight": self._last_packet_height,
            "lastReceiptHeight": self._last_receipt_height,
            "lastUpdated": datetime.now(timezone.utc).isoformat(),
        }

    def _request_persist(self) -> None:
        try:
            self._persist_requests.put_nowait(None)
        except asyncio.QueueFull:
            pass  # coalesced into the pending write

    def _write_atomic(self, payload: str) -> None:
        self.cache_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.cache_file.parent, prefix=f".{self.cache_file.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, self.cache_file)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    async def flush(self) -> None:
        """Write the current snapshot now."""
        payload = json.dumps(self.snapshot(), indent=2, default=str)
        await asyncio.to_thread(self._write_atomic, payload)
        self.writes_completed += 1

    async def _writer_loop(self) -> None:
        while True:
            await self._persist_requests.get()
            try:
                await self.flush()
            except OSError as e:
                logger.warning(f"Failed to persist packet cache to {self.cache_file}: {e}")
            if self._stopping and self._persist_requests.empty():
                return

    def start(self) -> None:
        """Start the background persistence writer."""
        if self._writer_task and not self._writer_task.done():
            return
        self._stopping = False
        self._writer_task = asyncio.create_task(self._writer_loop(), name="packet-cache-writer")

    async def stop(self) -> None:
        """Drain pending writes, write a final snapshot and stop the writer."""
        if self._writer_task and not self._writer_task.done():
            self._stopping = True
            self._request_persist()
            await self._writer_task
        elif not self._persist_requests.empty():
            self._persist_requests.get_nowait()
            try:
                await self.flush()
            except OSError as e:
                logger.warning(f"Failed to persist packet cache on shutdown: {e}")
        self._writer_task = None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "packets_cached": len(self._packets),
            "receipts_cached": len(self._receipts),
            "last_packet_height": self._last_packet_height,
            "last_receipt_height": self._last_receipt_height,
            "max_entries": self.max_entries,
            "writes_completed": self.writes_completed,
        }
