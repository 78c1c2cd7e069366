# src/crash_bucketing/keys.py

"""
Signature derivation for crash reports.

A report's bucket is identified by the positional tuple
(product, version, build, module, offset). Blank or missing components are
legitimate: they simply form their own bucket.
"""

import json
from typing import Iterable

from .exceptions import MalformedReportError
from .schemas import Report, Signature


def build_signature(report: Report) -> Signature:
    """Derives the bucket signature of *report*. Pure and total."""
    return Signature(
        product=report.product,
        version=report.version,
        build=report.build,
        module=report.module,
        offset=report.offset,
    )


def signature_key(signature: Signature) -> str:
    """
    Deterministic, collision-proof string form of a signature, used as a
    unique key in the bucket store. A JSON array keeps field boundaries intact
    even when values contain separator characters, and keeps None distinct
    from the empty string.
    """
    return json.dumps(list(signature), separators=(",", ":"), ensure_ascii=False)


def validate_signature(
    report_id: int, signature: Signature, required_fields: Iterable[str]
) -> Signature:
    """Raises MalformedReportError when a required component is blank."""
    missing = []
    for field in required_fields:
        value = getattr(signature, field)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(field)
    if missing:
        raise MalformedReportError(report_id=report_id, missing_fields=missing)
    return signature
