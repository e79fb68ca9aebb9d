"""EIP-4361 (Sign-In with Ethereum) message model.

Grammar and text rendering come from the `siwe` library; this model keeps the
fields as the exact strings received, accepts the camelCase keys JS clients
send, and adds the EIP-191 digest used by the contract-wallet fallback.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import siwe
from eth_utils.address import is_checksum_address
from eth_utils.crypto import keccak
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import ErrorKind, SiweError

EIP191_PREFIX = b"\x19Ethereum Signed Message:\n"

NONCE_RE = re.compile(r"^[a-zA-Z0-9]{8,}$")
# request-id = *pchar (RFC 3986)
REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9\-._~%!$&'()*+,;=:@]*$")
ISO8601_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?P<frac>\.\d+)?(?P<tz>Z|[+-]\d{2}:\d{2})$"
)

# tagged lines whose text is kept as received
TAGS = {
    "URI": "uri",
    "Issued At": "issued_at",
    "Expiration Time": "expiration_time",
    "Not Before": "not_before",
    "Request ID": "request_id",
}

FIELDS = (
    "domain",
    "address",
    "statement",
    "uri",
    "version",
    "chain_id",
    "nonce",
    "issued_at",
    "expiration_time",
    "not_before",
    "request_id",
    "resources",
)


def parse_iso8601(value: str) -> datetime:
    """Parse an RFC 3339 timestamp; raises ValueError on bad input."""
    m = ISO8601_RE.fullmatch(value or "")
    if m is None:
        raise ValueError(f"bad_timestamp: {value!r}")
    normalized = value
    frac = m.group("frac")
    if frac and len(frac) > 7:
        # datetime only keeps microseconds
        normalized = normalized.replace(frac, frac[:7], 1)
    if m.group("tz") == "Z":
        normalized = normalized[:-1] + "+00:00"
    dt = datetime.fromisoformat(normalized)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _plain(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return str(value)


def _received_text(text: str) -> dict[str, Any]:
    # the library normalises URLs but the signature covers the text as sent;
    # tagged fields follow the last blank line
    out: dict[str, Any] = {}
    lines = text.split("\n\n")[-1].split("\n")
    for i, line in enumerate(lines):
        tag, sep, value = line.partition(": ")
        if sep and tag in TAGS:
            out[TAGS[tag]] = value
        elif line == "Resources:":
            out["resources"] = [r[2:] for r in lines[i + 1 :] if r.startswith("- ")]
            break
    return out


class SiweMessage(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )

    domain: str
    address: str
    statement: str | None = None
    uri: str
    version: str
    chain_id: int
    nonce: str
    issued_at: str
    expiration_time: str | None = None
    not_before: str | None = None
    request_id: str | None = None
    resources: tuple[str, ...] | None = None

    @field_validator("address")
    @classmethod
    def _v_address(cls, v: str) -> str:
        if not is_checksum_address(v):
            raise ValueError("bad_address")
        return v

    @field_validator("statement")
    @classmethod
    def _v_statement(cls, v: str | None) -> str | None:
        if v is not None and ("\n" in v or "\r" in v):
            raise ValueError("bad_statement")
        return v or None

    @field_validator("chain_id")
    @classmethod
    def _v_chain_id(cls, v: int) -> int:
        if v < 1:
            raise ValueError("bad_chain_id")
        return v

    @field_validator("nonce")
    @classmethod
    def _v_nonce(cls, v: str) -> str:
        if not NONCE_RE.fullmatch(v or ""):
            raise ValueError("bad_nonce")
        return v

    @field_validator("request_id")
    @classmethod
    def _v_request_id(cls, v: str | None) -> str | None:
        # anything else could smuggle extra lines into the signed text
        if v is not None and not REQUEST_ID_RE.fullmatch(v):
            raise ValueError("bad_request_id")
        return v

    @field_validator("issued_at", "expiration_time", "not_before")
    @classmethod
    def _v_timestamp(cls, v: str | None) -> str | None:
        if v is not None:
            parse_iso8601(v)
        return v

    @model_validator(mode="after")
    def _v_grammar(self) -> SiweMessage:
        try:
            self._library_message()
        except ValueError as e:
            raise ValueError(f"not an EIP-4361 message: {e}") from None
        return self

    def _library_message(self) -> siwe.SiweMessage:
        fields = {name: getattr(self, name) for name in FIELDS}
        if fields["resources"] is not None:
            fields["resources"] = list(fields["resources"])
        fields = {k: v for k, v in fields.items() if v is not None}
        message = siwe.SiweMessage(**fields)
        return message.model_copy(
            update={k: v for k, v in fields.items() if k not in ("version", "chain_id")}
        )

    # ------------------------------ codec ------------------------------

    @classmethod
    def parse(cls, raw: str | Mapping[str, Any] | SiweMessage) -> SiweMessage:
        """Build a message from its EIP-4361 text or a field mapping.

        Raises SiweError(MalformedMessage) on anything that does not fit the grammar.
        """
        if isinstance(raw, SiweMessage):
            return raw
        if isinstance(raw, str):
            fields = cls._fields_from_text(raw)
        elif isinstance(raw, Mapping):
            fields = dict(raw)
        else:
            raise SiweError(ErrorKind.MALFORMED_MESSAGE, "str or mapping", type(raw).__name__)
        try:
            return cls.model_validate(fields)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise SiweError(ErrorKind.MALFORMED_MESSAGE, "EIP-4361 message", problems) from e

    @staticmethod
    def _fields_from_text(text: str) -> dict[str, Any]:
        try:
            parsed = siwe.SiweMessage.from_message(text)
        except Exception as e:
            # the ABNF parser raises its own error types besides ValueError
            raise SiweError(ErrorKind.MALFORMED_MESSAGE, "EIP-4361 message", str(e) or text[:80]) from e
        fields = {name: _plain(getattr(parsed, name, None)) for name in FIELDS}
        fields.update(_received_text(text))
        return fields

    def prepare_message(self) -> str:
        """Render the EIP-4361 text the wallet signs."""
        return self._library_message().prepare_message()

    def canonicalize(self) -> bytes:
        return self.prepare_message().encode("utf-8")

    def digest(self) -> bytes:
        """EIP-191 personal_sign hash of the canonical payload."""
        payload = self.canonicalize()
        return keccak(EIP191_PREFIX + str(len(payload)).encode("ascii") + payload)

    # ------------------------------ helpers ------------------------------

    @property
    def expiration_datetime(self) -> datetime | None:
        return parse_iso8601(self.expiration_time) if self.expiration_time else None

    @property
    def not_before_datetime(self) -> datetime | None:
        return parse_iso8601(self.not_before) if self.not_before else None

    @property
    def did_pkh(self) -> str:
        return f"did:pkh:eip155:{self.chain_id}:{self.address}"

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True)
        if "resources" in data:
            data["resources"] = list(data["resources"])
        return data

    def __str__(self) -> str:
        return self.prepare_message()
