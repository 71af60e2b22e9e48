"""Pattern-based secret scanning gate.

Content that looks like it carries credentials is rejected before it can be
forwarded anywhere. Errors only ever carry a redacted sample of the match.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .errors import SecretDetectionError


SCAN_CHUNK_BYTES = 1024 * 1024
# Bytes carried over between chunks so a match straddling a boundary is still seen.
SCAN_OVERLAP_BYTES = 512


@dataclass(frozen=True)
class SecretRule:
    secret_type: str
    label: str
    pattern: re.Pattern[bytes]


@dataclass(frozen=True)
class SecretFinding:
    secret_type: str
    label: str
    pattern_sample: str


SECRET_RULES: tuple[SecretRule, ...] = (
    SecretRule(
        "private_key",
        "Private Key",
        re.compile(rb"-----BEGIN (?:RSA |EC |DSA |OPENSSH |ENCRYPTED |PGP )?PRIVATE KEY(?: BLOCK)?-----"),
    ),
    SecretRule("aws_access_key", "AWS Access Key", re.compile(rb"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b")),
    SecretRule("github_token", "GitHub Token", re.compile(rb"\b(?:gh[pousr]_[A-Za-z0-9]{36,}|github_pat_[A-Za-z0-9_]{22,})")),
    SecretRule("slack_token", "Slack Token", re.compile(rb"\bxox[abprs]-[A-Za-z0-9-]{10,}")),
    SecretRule(
        "api_key",
        "API Key",
        re.compile(
            rb"(?i)(?P<name>\b(?:api[_-]?key|apikey|secret[_-]?key|access[_-]?token|auth[_-]?token|client[_-]?secret))"
            rb"\s*[:=]\s*['\"]?[A-Za-z0-9_\-./+]{8,}"
        ),
    ),
    SecretRule("api_key", "API Key", re.compile(rb"\bsk-[A-Za-z0-9_-]{20,}")),
    SecretRule(
        "password",
        "Password",
        re.compile(rb"(?i)(?P<name>\b(?:password|passwd|pwd))\s*[:=]\s*['\"][^'\"\s]{6,}['\"]"),
    ),
    SecretRule("bearer_token", "Bearer Token", re.compile(rb"(?i)\bbearer\s+[A-Za-z0-9\-._~+/]{20,}=*")),
    SecretRule(
        "generic_secret",
        "Secret",
        re.compile(rb"(?i)(?P<name>\b(?:secret|token|credentials?))\s*[:=]\s*['\"][A-Za-z0-9_\-./+=]{16,}['\"]"),
    ),
)


def _redact(match: re.Match[bytes]) -> str:
    name = match.groupdict().get("name")
    if name:
        return f"{name.decode('ascii', errors='replace')}=***"
    head = match.group(0)[:4].decode("ascii", errors="replace")
    return f"{head}***"


def scan_bytes(data: Union[bytes, bytearray, memoryview]) -> Optional[SecretFinding]:
    buf = bytes(data)
    for rule in SECRET_RULES:
        match = rule.pattern.search(buf)
        if match:
            return SecretFinding(secret_type=rule.secret_type, label=rule.label, pattern_sample=_redact(match))
    return None


def _raise_for(finding: SecretFinding) -> None:
    raise SecretDetectionError(
        f"File rejected: Secret found: {finding.label}",
        finding.secret_type,
        finding.pattern_sample,
    )


def validate_bytes_for_secrets(data: Union[bytes, bytearray, memoryview]) -> None:
    finding = scan_bytes(data)
    if finding is not None:
        _raise_for(finding)


def validate_file_for_secrets(path: Union[str, Path]) -> None:
    """Scan a file in fixed-size chunks so memory use does not depend on file size."""
    carry = b""
    with open(path, "rb") as fh:
        while True:
            chunk = fh.read(SCAN_CHUNK_BYTES)
            if not chunk:
                break
            window = carry + chunk
            finding = scan_bytes(window)
            if finding is not None:
                _raise_for(finding)
            carry = window[-SCAN_OVERLAP_BYTES:]
