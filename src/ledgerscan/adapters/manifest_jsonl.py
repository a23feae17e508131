from __future__ import annotations
import os, json, asyncio, time
from ..ports.storage import ManifestSink
from ..domain.models import ScanResult

class JSONLManifest(ManifestSink):
    """One line per failed range of a scan, then one summary line."""
    def __init__(self, path: str) -> None:
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._lock = asyncio.Lock()

    async def append_result(self, result: ScanResult) -> None:
        d = result.diagnostics
        now = time.time()
        lines = [
            {"kind": "chunk", "address": result.address, "from_block": f.chunk.start, "to_block": f.chunk.end,
             "status": "failed", "error_kind": f.kind, "error": f.error, "updated_at": now}
            for f in d.failures
        ]
        lines.append({
            "kind": "scan", "address": result.address, "strategy": d.strategy,
            "from_block": d.scanned_range.start if d.scanned_range else None,
            "to_block": d.scanned_range.end if d.scanned_range else None,
            "stop_reason": d.stop_reason, "records": result.total,
            "chunks_failed": d.chunking.chunks_failed, "updated_at": now,
        })
        payload = "".join(json.dumps(rec, separators=(",", ":")) + "\n" for rec in lines)
        async with self._lock:
            with open(self.path, "a") as f:
                f.write(payload); f.flush(); os.fsync(f.fileno())
