"""CLI entrypoint for the IOC processing pipeline."""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

from iocflow.config import load_config
from iocflow.errors import ConfigError, InvalidFormat
from iocflow.logging_setup import setup_logging
from iocflow.models import BatchReport, IOCResult, TenantContext
from iocflow.pipeline import IOCPipeline
from iocflow.validation import display_value, parse_ioc_file, validate_ioc

logger = setup_logging()


def summarize_result(result: IOCResult) -> dict[str, Any]:
    """Compact JSON-ready view of one processed IOC."""
    reputation = result.reputation
    return {
        "id": result.id,
        "ioc_type": result.ioc.ioc_type.value,
        "value": display_value(result.ioc),
        "confidence": result.ioc.confidence,
        "detection_confidence": result.detection_result.detection_confidence,
        "matched_rules": result.detection_result.matched_rules,
        "reputation": reputation.category.value if reputation is not None else None,
        "reputation_score": reputation.score if reputation is not None else None,
        "correlations": len(result.correlations),
        "overall_risk": result.analysis.impact.overall_risk,
        "recommendations": result.analysis.recommendations,
        "warnings": result.warnings,
    }


def build_process_summary(
    report: BatchReport,
    malformed_lines: list[tuple[int, str, str]],
    duplicates_removed: int,
) -> dict[str, Any]:
    """Summary document printed by the process command."""
    return {
        "total": report.total,
        "succeeded": report.succeeded,
        "failed": report.failed,
        "duplicates_removed": duplicates_removed,
        "malformed": [
            {"line": line, "raw": raw, "error": error}
            for line, raw, error in malformed_lines
        ],
        "errors": {str(index): message for index, message in sorted(report.errors.items())},
        "results": [summarize_result(r) for r in report.results],
    }


def emit(document: dict[str, Any], output: Optional[str]) -> None:
    """Write a JSON document to a file or stdout."""
    text = json.dumps(document, indent=2, default=str)
    if output:
        Path(output).write_text(text + "\n", encoding="utf-8")
        logger.info(f"Summary written to {output}")
    else:
        print(text)


async def validate_command(args: argparse.Namespace) -> int:
    """
    Execute the validate command.

    Parses the feed file and canonicalizes every IOC without touching
    storage or external sources.

    Returns:
        Exit code (0 = success, 2 = file not found).
    """
    logger.info(f"Validating IOCs from {args.ioc_file}")

    try:
        iocs, malformed_lines, duplicates_removed = parse_ioc_file(args.ioc_file, source=args.source)
    except FileNotFoundError as e:
        logger.error(str(e))
        return 2

    valid: list[dict[str, Any]] = []
    for ioc in iocs:
        line = ioc.raw_data.get("line_number", 0)
        try:
            outcome = validate_ioc(ioc)
        except InvalidFormat as e:
            malformed_lines.append((line, ioc.raw_data.get("raw_line", ioc.value), str(e)))
            continue
        valid.append(
            {
                "line": line,
                "ioc_type": outcome.ioc.ioc_type.value,
                "value": display_value(outcome.ioc),
                "warnings": outcome.warnings,
            }
        )

    logger.info(
        f"Parsed {len(valid)} valid IOCs, "
        f"{len(malformed_lines)} malformed, "
        f"{duplicates_removed} duplicates removed"
    )
    if malformed_lines:
        logger.warning(f"{len(malformed_lines)} malformed IOCs detected (see summary)")

    emit(
        {
            "valid": valid,
            "malformed": [
                {"line": line, "raw": raw, "error": error}
                for line, raw, error in sorted(malformed_lines)
            ],
            "duplicates_removed": duplicates_removed,
        },
        args.output,
    )
    return 0


async def process_command(args: argparse.Namespace) -> int:
    """
    Execute the process command.

    Runs every IOC in the feed file through the full pipeline for one
    tenant, using the storage backend and adapters from the environment.

    Returns:
        Exit code (0 = success, 2 = file not found or bad configuration).
    """
    logger.info(f"Processing IOCs from {args.ioc_file} for tenant {args.tenant}")

    try:
        config = load_config()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    try:
        iocs, malformed_lines, duplicates_removed = parse_ioc_file(args.ioc_file, source=args.source)
    except FileNotFoundError as e:
        logger.error(str(e))
        return 2

    ctx = TenantContext(tenant_id=args.tenant)
    pipeline = await IOCPipeline.from_config(config, rules_file=args.rules)
    try:
        report = await pipeline.process_batch(ctx, iocs)
    finally:
        await pipeline.close()

    if report.errors:
        logger.warning(f"{len(report.errors)} IOCs failed processing (see summary)")

    emit(build_process_summary(report, malformed_lines, duplicates_removed), args.output)
    logger.info("Processing complete")
    return 0


def main() -> None:
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(description="IOC processing pipeline")
    parser.add_argument(
        "command",
        choices=["process", "validate"],
        help="Command to run",
    )
    parser.add_argument(
        "ioc_file",
        help="Path to IOC input file",
    )
    parser.add_argument(
        "--tenant",
        type=str,
        default="default",
        help="Tenant that owns the processed IOCs (process only)",
    )
    parser.add_argument(
        "--source",
        type=str,
        default="file",
        help="Source identifier recorded on every IOC",
    )
    parser.add_argument(
        "--rules",
        type=str,
        default=None,
        help="JSON detection rule file replacing the default rules (process only)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Write the JSON summary to this path instead of stdout",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    if args.debug:
        setup_logging(debug=True)
    if not args.tenant.strip():
        parser.error("--tenant must not be empty")

    if args.command == "validate":
        exit_code = asyncio.run(validate_command(args))
    elif args.command == "process":
        exit_code = asyncio.run(process_command(args))
    else:
        parser.print_help()
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
