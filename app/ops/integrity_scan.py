from __future__ import annotations

import argparse
import json
import sys
from collections import Counter
from dataclasses import asdict

from app.medstock.core.config import settings
from app.medstock.db.session import build_engine, build_sessionmaker
from app.ops.integrity_checks import (
    SEVERITY_CRITICAL,
    SEVERITY_WARN,
    IntegrityFinding,
    resolve_organizations,
    run_integrity_checks,
)


def _summarize(findings: list[IntegrityFinding]) -> dict:
    counts = Counter(finding.severity for finding in findings)
    return {
        "total": len(findings),
        "critical": counts.get(SEVERITY_CRITICAL, 0),
        "warn": counts.get(SEVERITY_WARN, 0),
    }


def _format_text(summary: dict, findings: list[IntegrityFinding]) -> str:
    lines = [
        "Medstock integrity report",
        f"Findings: {summary['total']} (critical={summary['critical']}, warn={summary['warn']})",
    ]
    for finding in findings:
        lines.append(
            f"[{finding.severity}] {finding.check_id} org={finding.organization_id} "
            f"{finding.entity}/{finding.entity_id or '-'}: {finding.message}"
        )
        if finding.details:
            lines.append(f"    {json.dumps(finding.details, default=str, sort_keys=True)}")
    return "\n".join(lines)


def run_scan(organization: str, output_format: str, fail_on_critical: bool, *, database_url: str | None = None) -> int:
    if not settings.OPS_ENABLE_INTEGRITY_SCAN:
        print("Integrity scan disabled by OPS_ENABLE_INTEGRITY_SCAN.", file=sys.stderr)
        return 2
    engine = build_engine(database_url or settings.DATABASE_URL)
    try:
        with build_sessionmaker(engine)() as db:
            findings: list[IntegrityFinding] = []
            for organization_id in resolve_organizations(db, organization):
                findings.extend(run_integrity_checks(db, organization_id))
    finally:
        engine.dispose()
    summary = _summarize(findings)
    if output_format == "json":
        print(json.dumps({"summary": summary, "findings": [asdict(f) for f in findings]}, indent=2, default=str))
    else:
        print(_format_text(summary, findings))
    return 1 if fail_on_critical and summary["critical"] else 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Medstock transfer and stock integrity scan")
    parser.add_argument("--organization", required=True, help="Organization ID or 'all'")
    parser.add_argument("--format", choices=["json", "text"], default="text")
    parser.add_argument("--fail-on-critical", action="store_true")
    parser.add_argument("--database-url", default=None)
    args = parser.parse_args(argv)
    return run_scan(args.organization, args.format, args.fail_on_critical, database_url=args.database_url)


if __name__ == "__main__":
    raise SystemExit(main())
