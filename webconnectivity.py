#!/usr/bin/env python3
"""
Web Connectivity Summary — turn a finished measurement into a blocking verdict.

Takes the evidence collected by a Web Connectivity run (DNS consistency, TCP
connect counters, the control measurement, the HTTP request chain and the
content comparison flags) and decides whether the target was accessible and,
if not, which layer is to blame: dns, tcp_ip, http-failure or http-diff.

Pure function of its input. No network I/O. Zero external dependencies
(Python 3.8+ stdlib only).

Usage:
    webconnectivity-summary measurement.json
    webconnectivity-summary --jsonl measurements.jsonl
    cat measurement.json | webconnectivity-summary --log
"""

import os
import sys
import json
import errno
import socket
import ssl
import logging
import argparse
import http.client
import urllib.error
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any, Tuple, Union, TextIO


__version__ = "0.4.2"

log = logging.getLogger("webconnectivity")

# ─── Configuration ────────────────────────────────────────────────────────────

def _safe_int_env(name: str, default: int) -> int:
    """Parse an integer env var with fallback + warning on bad values."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        print(f"  WARNING: {name}={raw!r} is not a valid integer, using default {default}")
        return default

LOG_LEVEL = os.environ.get("WEBCONNECTIVITY_LOG_LEVEL", "INFO").upper()
JSON_INDENT = _safe_int_env("WEBCONNECTIVITY_JSON_INDENT", 0)  # 0 = one line per summary


class EvidenceError(ValueError):
    """Raised when evidence handed to us is malformed."""


# ─── Failure Taxonomy ─────────────────────────────────────────────────────────

FAILURE_CONNECTION_REFUSED = "connection_refused"
FAILURE_CONNECTION_RESET = "connection_reset"
FAILURE_DNS_NXDOMAIN = "dns_nxdomain_error"
FAILURE_EOF = "eof_error"
FAILURE_GENERIC_TIMEOUT = "generic_timeout_error"
FAILURE_SSL_INVALID_HOSTNAME = "ssl_invalid_hostname"
FAILURE_SSL_INVALID_CERTIFICATE = "ssl_invalid_certificate"
FAILURE_SSL_UNKNOWN_AUTHORITY = "ssl_unknown_authority"
FAILURE_UNKNOWN = "unknown_failure"

KNOWN_FAILURES = frozenset({
    FAILURE_CONNECTION_REFUSED,
    FAILURE_CONNECTION_RESET,
    FAILURE_DNS_NXDOMAIN,
    FAILURE_EOF,
    FAILURE_GENERIC_TIMEOUT,
    FAILURE_SSL_INVALID_HOSTNAME,
    FAILURE_SSL_INVALID_CERTIFICATE,
    FAILURE_SSL_UNKNOWN_AUTHORITY,
})

# OpenSSL X509_V_ERR_* codes
_X509_HOSTNAME_MISMATCH = 62
_X509_UNKNOWN_ISSUER_CODES = {
    2,   # UNABLE_TO_GET_ISSUER_CERT
    18,  # DEPTH_ZERO_SELF_SIGNED_CERT
    19,  # SELF_SIGNED_CERT_IN_CHAIN
    20,  # UNABLE_TO_GET_ISSUER_CERT_LOCALLY
}

_NXDOMAIN_EAI_CODES = {
    code for code in (
        getattr(socket, "EAI_NONAME", None),
        getattr(socket, "EAI_NODATA", None),
    )
    if code is not None
}

# Substrings seen in urllib/OS error text, checked in order
_REASON_PATTERNS = [
    ("connection refused", FAILURE_CONNECTION_REFUSED),
    ("reset by peer", FAILURE_CONNECTION_RESET),
    ("connection reset", FAILURE_CONNECTION_RESET),
    ("timed out", FAILURE_GENERIC_TIMEOUT),
    ("name or service not known", FAILURE_DNS_NXDOMAIN),
    ("nodename nor servname", FAILURE_DNS_NXDOMAIN),
    ("no such host", FAILURE_DNS_NXDOMAIN),
]


def _unknown_failure(detail: Any) -> str:
    return f"{FAILURE_UNKNOWN}: {detail}"


def _classify_reason_text(reason: str) -> str:
    lowered = reason.lower()
    for pattern, failure in _REASON_PATTERNS:
        if pattern in lowered:
            return failure
    return _unknown_failure(reason)


def classify_failure(exc: Optional[BaseException]) -> Optional[str]:
    """
    Map a raw transport error to its failure string.

    Returns None when there was no error. Anything we cannot place in the
    taxonomy comes back as "unknown_failure: <detail>" rather than raising.
    """
    if exc is None:
        return None

    if isinstance(exc, urllib.error.URLError) and not isinstance(exc, urllib.error.HTTPError):
        reason = exc.reason
        if isinstance(reason, BaseException):
            return classify_failure(reason)
        return _classify_reason_text(str(reason))

    # RemoteDisconnected subclasses ConnectionResetError but means the peer hung up
    if isinstance(exc, (http.client.RemoteDisconnected, ssl.SSLEOFError, EOFError)):
        return FAILURE_EOF

    if isinstance(exc, ssl.SSLCertVerificationError):
        code = getattr(exc, "verify_code", None)
        if code == _X509_HOSTNAME_MISMATCH:
            return FAILURE_SSL_INVALID_HOSTNAME
        if code in _X509_UNKNOWN_ISSUER_CODES:
            return FAILURE_SSL_UNKNOWN_AUTHORITY
        return FAILURE_SSL_INVALID_CERTIFICATE

    if isinstance(exc, ConnectionRefusedError):
        return FAILURE_CONNECTION_REFUSED
    if isinstance(exc, ConnectionResetError):
        return FAILURE_CONNECTION_RESET
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return FAILURE_GENERIC_TIMEOUT

    if isinstance(exc, socket.gaierror):
        if exc.errno in _NXDOMAIN_EAI_CODES:
            return FAILURE_DNS_NXDOMAIN
        return _unknown_failure(exc)

    if isinstance(exc, OSError) and not isinstance(exc, ssl.SSLError):
        if exc.errno == errno.ECONNREFUSED:
            return FAILURE_CONNECTION_REFUSED
        if exc.errno == errno.ECONNRESET:
            return FAILURE_CONNECTION_RESET
        if exc.errno == errno.ETIMEDOUT:
            return FAILURE_GENERIC_TIMEOUT

    return _unknown_failure(exc)


def is_known_failure(failure: Optional[str]) -> bool:
    """True if failure is one of the closed taxonomy identifiers."""
    return failure in KNOWN_FAILURES


# ─── Evidence Record ──────────────────────────────────────────────────────────

DNS_CONSISTENT = "consistent"
DNS_INCONSISTENT = "inconsistent"


@dataclass(frozen=True)
class HTTPRequestOutcome:
    """One request of the redirect chain."""
    url: str
    failure: Optional[str] = None

    @property
    def scheme(self) -> str:
        if "://" not in self.url:
            return ""
        return self.url.split("://", 1)[0]


@dataclass(frozen=True)
class ControlOutcome:
    """What the control vantage point saw."""
    failure: Optional[str] = None
    http_request_failure: Optional[str] = None


@dataclass(frozen=True)
class ContentComparison:
    """Probe-vs-control response comparison. None means not computed."""
    status_code_match: Optional[bool] = None
    body_length_match: Optional[bool] = None
    headers_match: Optional[bool] = None
    title_match: Optional[bool] = None


@dataclass(frozen=True)
class EvidenceRecord:
    """
    Everything measured during one run, handed over once all probes finished.

    Every field except the TCP counters may be absent, since any stage of
    the measurement can fail before later stages run. `requests` is ordered
    from the first request issued to the last redirect followed.
    """
    dns_experiment_failure: Optional[str] = None
    dns_consistency: Optional[str] = None
    tcp_connect_attempts: int = 0
    tcp_connect_successes: int = 0
    control: ControlOutcome = field(default_factory=ControlOutcome)
    requests: Tuple[HTTPRequestOutcome, ...] = ()
    content: ContentComparison = field(default_factory=ContentComparison)

    def __post_init__(self) -> None:
        if self.tcp_connect_attempts < 0 or self.tcp_connect_successes < 0:
            raise EvidenceError("tcp connect counters must be non-negative")
        if self.tcp_connect_successes > self.tcp_connect_attempts:
            raise EvidenceError(
                f"tcp_connect_successes ({self.tcp_connect_successes}) exceeds "
                f"tcp_connect_attempts ({self.tcp_connect_attempts})"
            )
        # Accept any sequence but keep the snapshot immutable
        if not isinstance(self.requests, tuple):
            object.__setattr__(self, "requests", tuple(self.requests))


# ─── Blocking Determination ───────────────────────────────────────────────────

REASON_DNS = "dns"
REASON_TCP_IP = "tcp_ip"
REASON_HTTP_FAILURE = "http-failure"
REASON_HTTP_DIFF = "http-diff"

# First-request failure -> blocking reason. Failures not listed stay unclassified.
FAILURE_REASONS = {
    # Possibly a later connection in the chain was blocked
    FAILURE_CONNECTION_REFUSED: REASON_TCP_IP,
    # Can't tell a TLS reset from a later one
    FAILURE_CONNECTION_RESET: REASON_HTTP_FAILURE,
    # Possibly a later name in the chain was blocked
    FAILURE_DNS_NXDOMAIN: REASON_DNS,
    # Seen with both TLS handshakes and HTTP blocking
    FAILURE_EOF: REASON_HTTP_FAILURE,
    # Packets dropped at TCP/IP level, whichever step it was
    FAILURE_GENERIC_TIMEOUT: REASON_TCP_IP,
    FAILURE_SSL_INVALID_HOSTNAME: REASON_HTTP_FAILURE,
    FAILURE_SSL_INVALID_CERTIFICATE: REASON_HTTP_FAILURE,
    FAILURE_SSL_UNKNOWN_AUTHORITY: REASON_HTTP_FAILURE,
}

Verdict = Tuple[Optional[bool], Optional[str]]

_UNDETERMINED: Verdict = (None, None)


def _blocked(reason: str) -> Verdict:
    return False, reason


def _content_matches(content: ContentComparison) -> bool:
    if content.status_code_match is not True:
        return False
    return (
        content.body_length_match is True
        or content.headers_match is True
        or content.title_match is True
    )


def _determine(evidence: EvidenceRecord) -> Verdict:
    """Run the blocking rules in order. The first rule that matches wins."""
    requests = evidence.requests
    consistency = evidence.dns_consistency

    # A working HTTPS fetch means either a rogue CA in our pool, transparent
    # proxying, or the legit server. Assume the latter.
    if requests and requests[0].failure is None and requests[0].scheme == "https":
        return True, None

    # Without a control there is nothing to compare with
    if evidence.control.failure is not None:
        return _UNDETERMINED

    # The domain does not exist anymore
    if evidence.dns_experiment_failure == FAILURE_DNS_NXDOMAIN and consistency == DNS_CONSISTENT:
        return _UNDETERMINED

    if (
        evidence.tcp_connect_attempts > 0
        and evidence.tcp_connect_successes <= 0
        and consistency is not None
    ):
        if consistency == DNS_CONSISTENT:
            return _blocked(REASON_TCP_IP)
        if consistency == DNS_INCONSISTENT:
            return _blocked(REASON_DNS)
        # Some other consistency value: nothing we can conclude
        return _UNDETERMINED

    if evidence.control.http_request_failure is not None:
        return _UNDETERMINED

    if not requests:
        return _UNDETERMINED

    first_failure = requests[0].failure
    if first_failure is not None:
        reason = FAILURE_REASONS.get(first_failure)
        if reason is None:
            # Could be a programmer's error. Stay conservative.
            return _UNDETERMINED
        # Single hop with a lying resolver: bet on DNS. Longer chains are
        # deliberately left alone.
        if len(requests) == 1 and consistency == DNS_INCONSISTENT:
            reason = REASON_DNS
        return _blocked(reason)

    # Neither probe nor control failed: did we get the expected page?
    if _content_matches(evidence.content):
        return True, None

    if consistency == DNS_INCONSISTENT:
        return _blocked(REASON_DNS)

    return _blocked(REASON_HTTP_DIFF)


# ─── Summary Rendering ────────────────────────────────────────────────────────

Blocking = Union[None, bool, str]


@dataclass(frozen=True)
class Summary:
    """
    Outcome of a measurement.

    accessible is None when the run failed or could not be interpreted.
    blocking_reason only means something when accessible is False and is
    never serialized; blocking is what data consumers read and is always
    derived from the other two by determine_blocking.
    """
    accessible: Optional[bool] = None
    blocking_reason: Optional[str] = None
    blocking: Blocking = field(init=False, default=None)

    def __post_init__(self) -> None:
        object.__setattr__(self, "blocking", determine_blocking(self))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accessible": self.accessible,
            "blocking": self.blocking,
        }


def determine_blocking(summary: Summary) -> Blocking:
    """
    Compute the `blocking` value data consumers expect: None, False or a reason.

    Legacy compatibility: blocking is False (not None) when accessible is True.
    OONI Probe Legacy and Measurement Kit 0.3.4 made this change so that
    "ran and found nothing" differs from "failed early", and the mobile apps
    use blocking == None to flag failed tests. Keep it.
    """
    if summary.accessible is True:
        return False
    return summary.blocking_reason


def summarize(evidence: EvidenceRecord) -> Summary:
    """Classify a finished measurement."""
    accessible, reason = _determine(evidence)
    return Summary(accessible=accessible, blocking_reason=reason)


def _render_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def log_summary(summary: Summary, logger: Any = None) -> None:
    """Log the summary as two lines through anything with an info(fmt, *args)."""
    logger = logger if logger is not None else log
    logger.info("Blocking %s", _render_value(summary.blocking_reason))
    logger.info("Accessible %s", _render_value(summary.accessible))


# ─── Test-keys Loading ────────────────────────────────────────────────────────

def _optional(data: Dict[str, Any], key: str, kind: type, where: str = "test_keys") -> Any:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, kind):
        raise EvidenceError(f"{where}.{key}: expected {kind.__name__}, got {type(value).__name__}")
    return value


def _object(data: Dict[str, Any], key: str, where: str = "test_keys") -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise EvidenceError(f"{where}.{key}: expected object, got {type(value).__name__}")
    return value


def _list(data: Dict[str, Any], key: str) -> List[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise EvidenceError(f"test_keys.{key}: expected list, got {type(value).__name__}")
    return value


def _parse_requests(entries: List[Any]) -> List[HTTPRequestOutcome]:
    requests = []
    for idx, entry in enumerate(entries):
        where = f"test_keys.requests[{idx}]"
        if not isinstance(entry, dict):
            raise EvidenceError(f"{where}: expected object, got {type(entry).__name__}")
        request = _object(entry, "request", where)
        url = _optional(request, "url", str, f"{where}.request") or ""
        failure = _optional(entry, "failure", str, where)
        requests.append(HTTPRequestOutcome(url=url, failure=failure))
    return requests


def _count_tcp_connects(entries: List[Any]) -> Tuple[int, int]:
    successes = 0
    for idx, entry in enumerate(entries):
        where = f"test_keys.tcp_connect[{idx}]"
        if not isinstance(entry, dict):
            raise EvidenceError(f"{where}: expected object, got {type(entry).__name__}")
        status = _object(entry, "status", where)
        if _optional(status, "success", bool, f"{where}.status") is True:
            successes += 1
    return len(entries), successes


def evidence_from_test_keys(test_keys: Dict[str, Any]) -> EvidenceRecord:
    """Build an EvidenceRecord from Web Connectivity test_keys."""
    if not isinstance(test_keys, dict):
        raise EvidenceError(f"test_keys: expected object, got {type(test_keys).__name__}")

    control = _object(test_keys, "control")
    control_http = _object(control, "http_request", "test_keys.control")
    attempts, successes = _count_tcp_connects(_list(test_keys, "tcp_connect"))

    return EvidenceRecord(
        dns_experiment_failure=_optional(test_keys, "dns_experiment_failure", str),
        dns_consistency=_optional(test_keys, "dns_consistency", str),
        tcp_connect_attempts=attempts,
        tcp_connect_successes=successes,
        control=ControlOutcome(
            failure=_optional(test_keys, "control_failure", str),
            http_request_failure=_optional(
                control_http, "failure", str, "test_keys.control.http_request"
            ),
        ),
        requests=tuple(_parse_requests(_list(test_keys, "requests"))),
        content=ContentComparison(
            status_code_match=_optional(test_keys, "status_code_match", bool),
            body_length_match=_optional(test_keys, "body_length_match", bool),
            headers_match=_optional(test_keys, "headers_match", bool),
            title_match=_optional(test_keys, "title_match", bool),
        ),
    )


def evidence_from_measurement(measurement: Dict[str, Any]) -> EvidenceRecord:
    """Accept either a full measurement (with test_keys) or bare test keys."""
    if not isinstance(measurement, dict):
        raise EvidenceError(f"measurement: expected object, got {type(measurement).__name__}")
    if "test_keys" in measurement:
        return evidence_from_test_keys(measurement["test_keys"])
    return evidence_from_test_keys(measurement)


# ─── CLI ──────────────────────────────────────────────────────────────────────

def _log_level() -> int:
    level = logging.getLevelName(LOG_LEVEL)
    if not isinstance(level, int):
        print(f"  WARNING: WEBCONNECTIVITY_LOG_LEVEL={LOG_LEVEL!r} is not a log level, using INFO")
        return logging.INFO
    return level


def _dump(summary: Summary) -> str:
    if JSON_INDENT > 0:
        return json.dumps(summary.to_dict(), indent=JSON_INDENT)
    return json.dumps(summary.to_dict())


def _summarize_one(measurement: Any, emit_log: bool) -> None:
    summary = summarize(evidence_from_measurement(measurement))
    if emit_log:
        log_summary(summary)
    print(_dump(summary))


def _summarize_stream(stream: TextIO, jsonl: bool, emit_log: bool) -> int:
    """Summarize every measurement in stream. Returns the number of bad lines."""
    if not jsonl:
        _summarize_one(json.load(stream), emit_log)
        return 0

    failures = 0
    for lineno, line in enumerate(stream, 1):
        line = line.strip()
        if not line:
            continue
        try:
            _summarize_one(json.loads(line), emit_log)
        except (json.JSONDecodeError, EvidenceError) as e:
            print(f"ERROR: line {lineno}: {e}", file=sys.stderr)
            failures += 1
    return failures


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Web Connectivity Summary — classify a measurement as accessible or blocked",
    )
    parser.add_argument(
        "file",
        nargs="?",
        default="-",
        help="Measurement JSON file (default: stdin)",
    )
    parser.add_argument(
        "--jsonl",
        action="store_true",
        help="Input holds one measurement per line",
    )
    parser.add_argument(
        "--log",
        action="store_true",
        help="Also log the Blocking/Accessible lines",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"webconnectivity-summary {__version__}",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=_log_level(),
        format="%(message)s",
    )

    try:
        if args.file == "-":
            failures = _summarize_stream(sys.stdin, args.jsonl, args.log)
        else:
            with open(args.file, encoding="utf-8") as stream:
                failures = _summarize_stream(stream, args.jsonl, args.log)
    except json.JSONDecodeError as e:
        print(f"ERROR: invalid JSON in {args.file}: {e}", file=sys.stderr)
        return 1
    except EvidenceError as e:
        print(f"ERROR: malformed measurement: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"ERROR: cannot read {args.file}: {e}", file=sys.stderr)
        return 1
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
