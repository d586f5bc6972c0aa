"""IOC validation, canonicalization and sanitization."""

import dataclasses
import ipaddress
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import validators

from iocflow.errors import InvalidFormat
from iocflow.models import (
    HASH_LENGTHS,
    HashAlgorithm,
    IOC,
    IOCType,
    ensure_utc,
    utcnow,
)

logger = logging.getLogger("iocflow.validation")

HEX_RE = re.compile(r"^[a-fA-F0-9]+$")
LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
WINDOWS_PATH_RE = re.compile(r"^[a-zA-Z]:[\\/]")
PERCENT_RE = re.compile(r"%([0-9a-fA-F]{2})")

MAX_LABEL_LENGTH = 63
MAX_DOMAIN_LENGTH = 253
DEFAULT_PORTS = {"http": 80, "https": 443}
ALLOWED_SCHEMES = ("http", "https")
# RFC 3986 unreserved characters never need percent-encoding
UNRESERVED = set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~")
SHELL_METACHARACTERS = set("|&;<>()$`\\\"' \t*?[]#~=%!{}")

# Patterns that replace dots and schemes in defanged indicators
_DOT_PATTERNS = [
    r"\[\.\]",
    r"\[dot\]",
    r"\(dot\)",
    r"\(\.\)",
]
_DOT_RE = re.compile("|".join(_DOT_PATTERNS), re.IGNORECASE)
_SCHEME_RE = re.compile(r"^hxxp(s?)(\[:\]|:)//", re.IGNORECASE)
_AT_RE = re.compile(r"\[at\]|\[@\]", re.IGNORECASE)


@dataclass
class ValidationOutcome:
    """A canonical IOC plus non-fatal warnings raised while producing it."""

    ioc: IOC
    warnings: list[str] = field(default_factory=list)


def refang(value: str) -> str:
    """Undo common defanging: [.] [dot] (dot) (.) hxxp:// [at]."""
    value = _DOT_RE.sub(".", value)
    value = _SCHEME_RE.sub(lambda m: f"http{m.group(1)}://", value)
    return _AT_RE.sub("@", value)


def sanitize_for_display(value: str) -> str:
    """Backslash-escape shell metacharacters and non-printables for display."""
    out = []
    for ch in value:
        if ch in SHELL_METACHARACTERS:
            out.append("\\" + ch)
        elif not ch.isprintable():
            out.append(f"\\x{ord(ch):02x}")
        else:
            out.append(ch)
    return "".join(out)


def display_value(ioc: IOC) -> str:
    """Value as shown to operators; file paths are escaped, other types are canonical already."""
    if ioc.ioc_type == IOCType.FILE_PATH:
        return sanitize_for_display(ioc.value)
    return ioc.value


def _canonical_ip(value: str, warnings: list[str]) -> str:
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        raise InvalidFormat(f"Invalid IP address: {value!r}")
    if address.version == 4 and not validators.ipv4(value):
        raise InvalidFormat(f"Invalid IPv4 address: {value!r}")
    if address.is_private or address.is_reserved or address.is_loopback or address.is_link_local:
        warnings.append(f"IP address {address} is in a private or reserved range")
    return str(address)


def _canonical_domain(value: str, warnings: list[str]) -> str:
    domain = value.lower()
    if domain.endswith("."):
        domain = domain[:-1]
    if len(domain) > MAX_DOMAIN_LENGTH:
        raise InvalidFormat(f"Domain exceeds {MAX_DOMAIN_LENGTH} characters: {value!r}")
    labels = domain.split(".")
    if len(labels) < 2:
        raise InvalidFormat(f"Domain must contain at least two labels: {value!r}")
    for label in labels:
        if len(label) > MAX_LABEL_LENGTH:
            raise InvalidFormat(f"Domain label exceeds {MAX_LABEL_LENGTH} characters: {label!r}")
        if not LABEL_RE.match(label):
            raise InvalidFormat(f"Invalid domain label {label!r} in {value!r}")
    if labels[-1].isdigit():
        raise InvalidFormat(f"Top-level label must not be numeric: {value!r}")
    return domain


def _normalize_percent(component: str) -> str:
    """Uppercase escapes and decode escaped unreserved characters."""

    def _fix(match: re.Match) -> str:
        char = chr(int(match.group(1), 16))
        if char in UNRESERVED:
            return char
        return "%" + match.group(1).upper()

    return PERCENT_RE.sub(_fix, component)


def _canonical_url(value: str, warnings: list[str]) -> str:
    try:
        parts = urlsplit(value)
        port = parts.port
    except ValueError as e:
        raise InvalidFormat(f"URL authority does not parse: {value!r} ({e})")

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise InvalidFormat(f"URL scheme must be http or https: {value!r}")
    host = parts.hostname
    if not host:
        raise InvalidFormat(f"URL has no host: {value!r}")

    host_warnings: list[str] = []
    try:
        host = _canonical_ip(host, host_warnings)
        if ":" in host:
            host = f"[{host}]"
    except InvalidFormat:
        host = _canonical_domain(host, host_warnings)
    warnings.extend(host_warnings)

    netloc = host
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo += f":{parts.password}"
        netloc = f"{userinfo}@{netloc}"
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"

    path = _normalize_percent(parts.path) or "/"
    canonical = urlunsplit(
        (scheme, netloc, path, _normalize_percent(parts.query), _normalize_percent(parts.fragment))
    )
    if not validators.url(canonical, strict_query=False):
        raise InvalidFormat(f"Invalid URL: {value!r}")
    return canonical


def _canonical_hash(value: str) -> tuple[str, HashAlgorithm]:
    if not HEX_RE.match(value) or len(value) not in HASH_LENGTHS:
        raise InvalidFormat(
            f"Hash must be 32, 40 or 64 hex characters (got {len(value)}): {value!r}"
        )
    return value.lower(), HASH_LENGTHS[len(value)]


def _canonical_email(value: str, warnings: list[str]) -> str:
    local, sep, domain = value.rpartition("@")
    if not sep or not local or not domain:
        raise InvalidFormat(f"Email must be local@domain: {value!r}")
    canonical = f"{local}@{_canonical_domain(domain, warnings)}"
    if not validators.email(canonical):
        raise InvalidFormat(f"Invalid email address: {value!r}")
    return canonical


def _check_file_path(value: str) -> str:
    if not value.isprintable():
        raise InvalidFormat("File path contains non-printable characters")
    return value


def canonicalize(ioc_type: IOCType, value: str) -> tuple[str, Optional[HashAlgorithm], list[str]]:
    """
    Produce the canonical form of a raw value for the given type.

    Returns:
        Tuple of (canonical_value, hash_algorithm, warnings)

    Raises:
        InvalidFormat: If the value fails structural validation
    """
    warnings: list[str] = []
    if value is None or not str(value).strip():
        raise InvalidFormat(f"Empty {ioc_type.value} value")

    if ioc_type == IOCType.FILE_PATH:
        # Kept verbatim; only escaped when displayed
        return _check_file_path(value), None, warnings

    stripped = value.strip()
    if ioc_type != IOCType.HASH:
        stripped = refang(stripped)

    algorithm: Optional[HashAlgorithm] = None
    if ioc_type == IOCType.IP:
        canonical = _canonical_ip(stripped, warnings)
    elif ioc_type == IOCType.DOMAIN:
        canonical = _canonical_domain(stripped, warnings)
    elif ioc_type == IOCType.URL:
        canonical = _canonical_url(stripped, warnings)
    elif ioc_type == IOCType.HASH:
        canonical, algorithm = _canonical_hash(stripped)
    elif ioc_type == IOCType.EMAIL:
        canonical = _canonical_email(stripped, warnings)
    else:
        raise InvalidFormat(f"Unsupported IOC type: {ioc_type!r}")

    if canonical != value:
        warnings.append(f"Value canonicalized from {value!r} to {canonical!r}")
    return canonical, algorithm, warnings


def validate_ioc(ioc: IOC) -> ValidationOutcome:
    """
    Validate and canonicalize an IOC.

    The returned IOC is a copy carrying the canonical value; the input is
    never mutated.

    Raises:
        InvalidFormat: On structural failure or out-of-range confidence
    """
    if not isinstance(ioc.ioc_type, IOCType):
        raise InvalidFormat(f"Unknown IOC type: {ioc.ioc_type!r}")
    if not isinstance(ioc.confidence, (int, float)) or not 0.0 <= ioc.confidence <= 1.0:
        raise InvalidFormat(f"Confidence must be in [0, 1]: {ioc.confidence!r}")

    canonical, algorithm, warnings = canonicalize(ioc.ioc_type, ioc.value)

    now = utcnow()
    timestamp = ensure_utc(ioc.timestamp)
    if timestamp > now:
        warnings.append(f"Timestamp {timestamp.isoformat()} is in the future; clamped to now")
        timestamp = now

    context = dataclasses.replace(ioc.context, related_indicators=list(ioc.context.related_indicators))
    if context.first_seen is not None:
        context.first_seen = ensure_utc(context.first_seen)
        if context.first_seen > timestamp:
            warnings.append("first_seen was after the observation time; adjusted")
            context.first_seen = timestamp
    if context.last_seen is not None:
        context.last_seen = ensure_utc(context.last_seen)
        if context.last_seen < timestamp:
            warnings.append("last_seen was before the observation time; adjusted")
            context.last_seen = timestamp

    tags = {str(tag).strip() for tag in ioc.tags if str(tag).strip()}

    for warning in warnings:
        logger.debug(f"{ioc.ioc_type.value} {canonical}: {warning}")

    validated = dataclasses.replace(
        ioc,
        value=canonical,
        hash_algorithm=algorithm,
        timestamp=timestamp,
        context=context,
        tags=tags,
        confidence=float(ioc.confidence),
    )
    return ValidationOutcome(ioc=validated, warnings=warnings)


def detect_ioc_type(value: str) -> tuple[IOCType, Optional[HashAlgorithm]] | None:
    """
    Auto-detect IOC type from a raw value.

    Returns (IOCType, HashAlgorithm) tuple for hashes, (IOCType, None) for others.
    Returns None if unrecognized.
    """
    value = value.strip()
    if WINDOWS_PATH_RE.match(value) or value.startswith(("/", "\\\\", "~/")):
        return (IOCType.FILE_PATH, None)

    refanged = refang(value)

    # Order matters: URL > IP > Hashes > Email > Domain
    for ioc_type in (IOCType.URL, IOCType.IP):
        try:
            canonicalize(ioc_type, refanged)
            return (ioc_type, None)
        except InvalidFormat:
            pass

    if HEX_RE.match(value) and len(value) in HASH_LENGTHS:
        return (IOCType.HASH, HASH_LENGTHS[len(value)])

    for ioc_type in (IOCType.EMAIL, IOCType.DOMAIN):
        try:
            canonicalize(ioc_type, refanged)
            return (ioc_type, None)
        except InvalidFormat:
            pass

    return None


def parse_ioc_file(
    file_path: str, source: str = "file"
) -> tuple[list[IOC], list[tuple[int, str, str]], int]:
    """
    Parse an IOC feed file and return raw IOCs, malformed lines, and duplicate count.

    Args:
        file_path: Path to the IOC input file
        source: Source identifier recorded on every IOC

    Returns:
        Tuple of (iocs, malformed_lines, duplicates_removed)
        malformed_lines is a list of (line_number, raw_line, error_message) tuples
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"IOC file not found: {file_path}")

    iocs: list[IOC] = []
    malformed_lines: list[tuple[int, str, str]] = []
    seen: set[tuple[IOCType, str]] = set()
    duplicates_removed = 0

    with path.open("r", encoding="utf-8") as f:
        for line_num, line in enumerate(f, start=1):
            raw_line = line.rstrip("\n")
            stripped = raw_line.strip()

            # Skip empty lines and comments
            if not stripped or stripped.startswith("#"):
                continue

            detection = detect_ioc_type(stripped)
            if detection is None:
                malformed_lines.append(
                    (
                        line_num,
                        raw_line,
                        "Unrecognized IOC type (expected: IP, domain, URL, hash, email or path)",
                    )
                )
                continue

            ioc_type, hash_algo = detection

            # Deduplicate (case-insensitive except for paths)
            key_value = stripped if ioc_type == IOCType.FILE_PATH else stripped.lower()
            if (ioc_type, key_value) in seen:
                duplicates_removed += 1
                continue
            seen.add((ioc_type, key_value))

            iocs.append(
                IOC(
                    ioc_type=ioc_type,
                    value=stripped,
                    source=source,
                    hash_algorithm=hash_algo,
                    raw_data={"line_number": line_num, "raw_line": raw_line},
                )
            )

    return iocs, malformed_lines, duplicates_removed
