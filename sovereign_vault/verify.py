"""
Offline Export Verifier

Checks a vault export (plain or obfuscated) without a server: every
ledger entry is re-hashed and the chain is walked from the first entry.

Usage:
    vault-verify export.json
    vault-verify export.b64 --verbose
    vault-verify export.json --json

Exit codes:
    0 - VERIFIED: Chain intact
    1 - TAMPERED: Digest or linkage mismatch
    2 - INCOMPLETE: Chain summary disagrees with the entries (truncated export)
    3 - INVALID_FORMAT: Not a readable export
"""

import argparse
import json
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from .core.export import EXPORT_FORMAT_VERSION, ExportError, decode_export
from .core.ledger import walk_chain
from .schemas import EntryKind, LedgerEntry


class VerificationResult(Enum):
    VERIFIED = "VERIFIED"
    TAMPERED = "TAMPERED"
    INCOMPLETE = "INCOMPLETE"
    INVALID_FORMAT = "INVALID_FORMAT"


EXIT_CODES = {
    VerificationResult.VERIFIED: 0,
    VerificationResult.TAMPERED: 1,
    VerificationResult.INCOMPLETE: 2,
    VerificationResult.INVALID_FORMAT: 3,
}

# Export sections holding the records each kind points at
_RECORD_SECTIONS = {
    EntryKind.STATE: "emotional_states",
    EntryKind.RISK_EVENT: "risk_events",
    EntryKind.SESSION: "session_logs",
}


@dataclass
class VerificationReport:
    result: VerificationResult
    partition: Optional[str]
    entry_count: int
    broken_at_index: Optional[int] = None
    checks_passed: list[str] = field(default_factory=list)
    checks_failed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.result]

    def to_dict(self) -> dict[str, Any]:
        return {
            "result": self.result.value,
            "partition": self.partition,
            "entry_count": self.entry_count,
            "broken_at_index": self.broken_at_index,
            "checks_passed": self.checks_passed,
            "checks_failed": self.checks_failed,
            "warnings": self.warnings,
        }


class ExportVerifier:
    """Verifies one decoded export document."""

    REQUIRED_KEYS = ("format_version", "partition", "ledger_entries", "chain")

    def __init__(self, document: dict[str, Any], verbose: bool = False):
        self.document = document
        self.verbose = verbose
        self.entries: list[LedgerEntry] = []
        self.report = VerificationReport(
            result=VerificationResult.VERIFIED,
            partition=document.get("partition"),
            entry_count=len(document.get("ledger_entries") or []),
        )

    def log(self, msg: str) -> None:
        if self.verbose:
            print(f"  {msg}")

    def _fail(self, result: VerificationResult, msg: str) -> VerificationReport:
        self.report.result = result
        self.report.checks_failed.append(msg)
        return self.report

    def verify(self) -> VerificationReport:
        if not self._check_structure():
            return self.report
        if not self._parse_entries():
            return self.report
        if not self._verify_chain():
            return self.report
        if not self._check_summary():
            return self.report
        self._check_references()
        return self.report

    def _check_structure(self) -> bool:
        self.log("Checking document structure...")
        missing = [k for k in self.REQUIRED_KEYS if k not in self.document]
        if missing:
            self._fail(VerificationResult.INVALID_FORMAT, f"Missing keys: {', '.join(missing)}")
            return False

        version = self.document["format_version"]
        if version != EXPORT_FORMAT_VERSION:
            self._fail(VerificationResult.INVALID_FORMAT, f"Unsupported format_version {version!r}")
            return False

        self.report.checks_passed.append("Document structure valid")
        return True

    def _parse_entries(self) -> bool:
        self.log("Parsing ledger entries...")
        for i, raw in enumerate(self.document["ledger_entries"]):
            try:
                self.entries.append(LedgerEntry.model_validate(raw))
            except PydanticValidationError as e:
                self._fail(VerificationResult.INVALID_FORMAT, f"Entry {i} is malformed: {e}")
                return False
        self.report.checks_passed.append(f"{len(self.entries)} entries parsed")
        return True

    def _verify_chain(self) -> bool:
        self.log("Re-hashing and walking the chain...")
        result = walk_chain(self.document["partition"], self.entries)
        if not result.valid:
            self.report.broken_at_index = result.broken_at_index
            self._fail(
                VerificationResult.TAMPERED,
                f"Chain broken at index {result.broken_at_index}: {result.reason}",
            )
            return False
        self.report.checks_passed.append("Every digest and link verified")
        return True

    def _check_summary(self) -> bool:
        chain = self.document["chain"] or {}
        tail = self.entries[-1].payload_digest if self.entries else None

        if chain.get("entry_count") != len(self.entries):
            self._fail(
                VerificationResult.INCOMPLETE,
                f"Summary claims {chain.get('entry_count')} entries, found {len(self.entries)}",
            )
            return False
        if chain.get("tail_digest") != tail:
            self._fail(VerificationResult.INCOMPLETE, "Summary tail digest does not match last entry")
            return False

        if chain.get("valid") is False:
            self.report.warnings.append(
                f"Export was taken from a chain reported broken at {chain.get('broken_at_index')}"
            )
        self.report.checks_passed.append("Chain summary matches entries")
        return True

    def _check_references(self) -> None:
        present = {
            kind: {r.get("id") for r in self.document.get(section) or []}
            for kind, section in _RECORD_SECTIONS.items()
        }
        orphaned = sum(
            1 for e in self.entries
            if e.kind in present and e.reference_id not in present[e.kind]
        )
        if orphaned:
            # Expected after retention; the entries still verify
            self.report.warnings.append(f"{orphaned} entries reference records no longer present")


def print_report(report: VerificationReport, json_output: bool = False) -> None:
    if json_output:
        print(json.dumps(report.to_dict(), indent=2))
        return

    banners = {
        VerificationResult.VERIFIED: "[VERIFIED] - Chain intact",
        VerificationResult.TAMPERED: "[TAMPERED] - Digest or linkage mismatch detected",
        VerificationResult.INCOMPLETE: "[INCOMPLETE] - Export summary disagrees with entries",
        VerificationResult.INVALID_FORMAT: "[INVALID_FORMAT] - Not a readable export",
    }
    print("\n" + "=" * 60)
    print(f"  {banners[report.result]}")
    print("=" * 60)

    print(f"\nPartition: {report.partition}")
    print(f"Entries:   {report.entry_count}")
    if report.broken_at_index is not None:
        print(f"Broken at: {report.broken_at_index}")

    for title, items, mark in (
        ("Passed", report.checks_passed, "+"),
        ("Failed", report.checks_failed, "-"),
        ("Warnings", report.warnings, "!"),
    ):
        if items:
            print(f"\n{title}:")
            for item in items:
                print(f"  {mark} {item}")
    print()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Verify a Sovereign Vault export offline",
        epilog="Exit codes: 0=VERIFIED, 1=TAMPERED, 2=INCOMPLETE, 3=INVALID_FORMAT",
    )
    parser.add_argument("export", type=str, help="Path to the export file (plain or obfuscated)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show verification progress")
    parser.add_argument("--json", action="store_true", help="Output result as JSON")
    args = parser.parse_args(argv)

    path = Path(args.export)
    if not path.exists():
        print(f"ERROR: File not found: {path}")
        return EXIT_CODES[VerificationResult.INVALID_FORMAT]

    try:
        document = decode_export(path.read_bytes())
    except ExportError as e:
        print(f"ERROR: {e}")
        return EXIT_CODES[VerificationResult.INVALID_FORMAT]

    report = ExportVerifier(document, verbose=args.verbose).verify()
    print_report(report, json_output=args.json)
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
