"""Background balance / UTXO-count summary for the console header.

A single daemon thread fetches the summary once and writes it to a status file.
Readers treat a missing or half-written file as "not yet available".
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from .errors import MultisigError
from .rpc_client import RPCError, RPCTransportError
from .utxos import UTXOFetcher, summarize

logger = logging.getLogger(__name__)

FETCHING = "Fetching..."


def write_status(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=".status-", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as handle:
            json.dump(payload, handle)
        os.replace(tmp_name, path)
    except OSError:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def read_status(path: Path) -> Dict[str, Any] | None:
    try:
        data = json.loads(Path(path).read_text())
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def clear_status(path: Path) -> None:
    Path(path).unlink(missing_ok=True)


def status_lines(path: Path) -> tuple[str, str]:
    """Return the (balance, utxos) strings shown above the menu."""

    status = read_status(path)
    if status is None:
        return FETCHING, FETCHING
    if status.get("error"):
        return str(status["error"]), str(status["error"])
    return str(status.get("balance", FETCHING)), str(status.get("utxos", FETCHING))


class StatusMonitor:
    """Fetch the address summary once on a detached thread."""

    def __init__(self, rpc: Any, address: str | None, status_path: Path, **fetch_kwargs: Any) -> None:
        self.rpc = rpc
        self.address = address
        self.status_path = Path(status_path)
        self.fetch_kwargs = fetch_kwargs
        self._thread: threading.Thread | None = None

    def start(self) -> threading.Thread:
        clear_status(self.status_path)
        self._thread = threading.Thread(target=self.run_once, name="status-fetch", daemon=True)
        self._thread.start()
        return self._thread

    def run_once(self) -> Dict[str, Any]:
        payload = self._collect()
        payload["updated_at"] = datetime.now(timezone.utc).isoformat()
        try:
            write_status(self.status_path, payload)
        except OSError as exc:
            logger.warning("Unable to write status file %s: %s", self.status_path, exc)
        return payload

    def _collect(self) -> Dict[str, Any]:
        if not self.address:
            return {"error": "N/A (No P2SH address set)"}
        try:
            validity = self.rpc.validateaddress(self.address) or {}
            if validity.get("isvalid") is not True:
                return {"error": "Invalid P2SH address"}
            utxos = UTXOFetcher(self.rpc).fetch(self.address, **self.fetch_kwargs)
        except (MultisigError, RPCError, RPCTransportError) as exc:
            logger.debug("Status fetch failed: %s", exc)
            return {"error": "Error fetching balance"}
        summary = summarize(utxos)
        return {"balance": f"{summary.total:.8f}", "utxos": summary.count}
