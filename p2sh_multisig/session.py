"""Persisted signing sessions used to hand a transaction from one signer to the next.

A session file is a small JSON document holding everything the next cosigner
needs: the partially signed hex, the inputs with their scripts, and the
signature bookkeeping. Files are named from the address prefix, the kind of
transaction, the batch number and a timestamp so that a directory listing
reads as a history.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional

from .errors import DecodeError, ValidationError
from .models import RedeemScriptInfo, TransactionInput
from .tx_builder import BuiltTransaction

logger = logging.getLogger(__name__)

SESSION_SCHEMA_VERSION = 1
FILE_SUFFIX = ".json"

MismatchCallback = Callable[[str, Optional[str], str], bool]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SigningSession:
    """Transaction-in-progress state shared between cosigners."""

    p2sh_address: str
    redeem_script: str
    inputs: List[TransactionInput]
    signed_hex: str
    complete: bool = False
    signatures: int = 0
    required_signatures: int = 0
    kind: str = "send"
    batch: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    txid: str | None = None
    signers: List[str] = field(default_factory=list)
    version: int = SESSION_SCHEMA_VERSION
    path: Path | None = field(default=None, compare=False)

    @classmethod
    def from_built(cls, built: BuiltTransaction, redeem: RedeemScriptInfo, batch: int = 0) -> "SigningSession":
        """Start an unsigned session for a freshly built transaction."""

        return cls(
            p2sh_address=redeem.p2sh_address,
            redeem_script=redeem.redeem_script,
            inputs=list(built.inputs),
            signed_hex=built.raw_hex,
            required_signatures=redeem.required_signatures,
            kind=built.kind,
            batch=batch,
        )

    def with_signature(
        self, signed_hex: str, complete: bool, signatures: int, signer: str | None = None
    ) -> "SigningSession":
        signers = list(self.signers)
        if signer and signer not in signers:
            signers.append(signer)
        return replace(
            self,
            signed_hex=signed_hex,
            complete=complete,
            signatures=signatures,
            signers=signers,
            updated_at=_utcnow(),
            path=None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "p2sh_address": self.p2sh_address,
            "redeem_script": self.redeem_script,
            "inputs": [i.to_rpc() for i in self.inputs],
            "signed_hex": self.signed_hex,
            "complete": self.complete,
            "signatures": self.signatures,
            "required_signatures": self.required_signatures,
            "kind": self.kind,
            "batch": self.batch,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "txid": self.txid,
            "signers": list(self.signers),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SigningSession":
        version = int(data.get("version", SESSION_SCHEMA_VERSION))
        if version > SESSION_SCHEMA_VERSION:
            raise ValidationError(
                f"Session schema version {version} is newer than supported version {SESSION_SCHEMA_VERSION}"
            )
        try:
            return cls(
                p2sh_address=str(data["p2sh_address"]),
                redeem_script=str(data["redeem_script"]),
                inputs=[TransactionInput.from_dict(item) for item in data.get("inputs", [])],
                signed_hex=str(data["signed_hex"]),
                complete=bool(data.get("complete", False)),
                signatures=int(data.get("signatures", 0)),
                required_signatures=int(data.get("required_signatures", 0)),
                kind=str(data.get("kind", "send")),
                batch=int(data.get("batch", 0)),
                created_at=_parse_time(data.get("created_at")),
                updated_at=_parse_time(data.get("updated_at")),
                txid=data.get("txid"),
                signers=[str(s) for s in data.get("signers", [])],
                version=version,
            )
        except (DecodeError, KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Session file is missing or has invalid fields: {exc}") from exc


def _parse_time(raw: Any) -> datetime:
    if not raw:
        return _utcnow()
    return datetime.fromisoformat(str(raw))


def session_filename(session: SigningSession) -> str:
    prefix = (session.p2sh_address or "unknown")[:8]
    stamp = session.updated_at.strftime("%Y%m%dT%H%M%S%f")
    return f"{prefix}_{session.kind}_b{session.batch:03d}_{stamp}{FILE_SUFFIX}"


class SessionStore:
    """Directory of session files."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory).expanduser()

    def save(self, session: SigningSession) -> Path:
        """Write ``session`` and return its path; re-saving updates the same file."""

        self.directory.mkdir(parents=True, exist_ok=True)
        path = session.path
        if path is None:
            path = self._unique_path(session_filename(session))
        payload = json.dumps(session.to_dict(), indent=2)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=".session-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        session.path = path
        logger.info("Saved session to %s", path)
        return path

    def _unique_path(self, name: str) -> Path:
        candidate = self.directory / name
        stem = candidate.stem
        counter = 1
        while candidate.exists():
            candidate = self.directory / f"{stem}-{counter}{FILE_SUFFIX}"
            counter += 1
        return candidate

    def load(
        self,
        path: str | Path,
        *,
        p2sh_address: str | None = None,
        redeem_script: str | None = None,
        confirm_mismatch: MismatchCallback | None = None,
    ) -> SigningSession:
        """Read a session, checking it against the caller's address and script."""

        path = Path(path).expanduser()
        if not path.is_absolute() and not path.exists():
            path = self.directory / path
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError as exc:
            raise ValidationError(f"Session file not found: {path}") from exc
        except (OSError, ValueError) as exc:
            raise ValidationError(f"Unable to read session file {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValidationError(f"Session file {path} does not contain a JSON object")

        session = SigningSession.from_dict(data)
        session.path = path
        checks = (
            ("p2sh_address", session.p2sh_address, p2sh_address),
            ("redeem_script", session.redeem_script.lower(), redeem_script.lower() if redeem_script else None),
        )
        for name, file_value, expected in checks:
            if expected is None or file_value == expected:
                continue
            logger.warning("Session %s has %s=%s, expected %s", path.name, name, file_value, expected)
            if confirm_mismatch is None or not confirm_mismatch(name, file_value, expected):
                raise ValidationError(f"Session {name} does not match the configured value")
        return session

    def list_sessions(self, prefix: str | None = None) -> List[Path]:
        if not self.directory.exists():
            return []
        pattern = f"{prefix[:8]}_*{FILE_SUFFIX}" if prefix else f"*{FILE_SUFFIX}"
        return sorted(self.directory.glob(pattern))
