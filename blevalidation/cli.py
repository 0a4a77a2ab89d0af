"""
BLE Validation — Command-line runner.

Runs every enabled validation phase against a project checkout, writes the
export and prints a structured summary.

Usage:
    blevalidation-run [--config config.yaml] [--project-root PATH]
                      [--phases static_analysis,security_audit]
                      [--format json|markdown] [--output report.json]

Exit codes: 0 GO or CONDITIONAL_GO, 1 NO_GO, 2 configuration error.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

import structlog
from dotenv import load_dotenv
from pydantic import ValidationError

from blevalidation.config import BLEValidationConfig, load_config
from blevalidation.systems.validation.factory import build_default_controller
from blevalidation.systems.validation.errors import ValidationFrameworkError
from blevalidation.systems.validation.reporting import (
    generate_executive_summary,
    render_executive_summary,
)
from blevalidation.systems.validation.types import Recommendation
from blevalidation.systems.validation.verdict import ProductionReadinessVerdictEngine
from blevalidation.telemetry.logging import setup_logging

logger = structlog.get_logger()


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="blevalidation-run",
        description="Validate a BLE beacon attendance system for production readiness.",
    )
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--project-root", help="Root of the project under validation")
    parser.add_argument("--phases", help="Comma-separated phases to run (default: all)")
    parser.add_argument("--format", choices=["json", "markdown"], help="Export format")
    parser.add_argument("--output", help="Write the export to this file instead of stdout")
    parser.add_argument("--log-format", choices=["console", "json"], help="Log renderer")
    return parser.parse_args(argv)


def _apply_overrides(config: BLEValidationConfig, args: argparse.Namespace) -> BLEValidationConfig:
    raw = config.model_dump()
    if args.project_root:
        raw["sources"]["project_root"] = args.project_root
    if args.phases:
        raw["validation"]["enabled_phases"] = [p.strip() for p in args.phases.split(",") if p.strip()]
    if args.format:
        raw["validation"]["output_format"] = args.format.upper()
    if args.log_format:
        raw["logging"]["format"] = args.log_format
    return BLEValidationConfig(**raw)


async def run(config: BLEValidationConfig, output: str | None = None) -> int:
    controller = build_default_controller(config)
    try:
        result = await controller.execute_validation()
    finally:
        await controller.cleanup()

    categorization = controller.categorizer.categorize_issues(result)
    verdict = ProductionReadinessVerdictEngine(config.verdict).generate_verdict(result, categorization)

    export = controller.export_results()
    if output:
        Path(output).write_text(export, encoding="utf-8")
        logger.info(
            "export_written",
            system="validation.cli",
            path=output,
            format=config.validation.output_format,
        )
    else:
        print(export)

    summary = generate_executive_summary(result, categorization, verdict)
    sep = "=" * 60
    print(f"\n{sep}", file=sys.stderr)
    print(render_executive_summary(summary), file=sys.stderr)
    print(sep, file=sys.stderr)

    return 1 if verdict.recommendation.recommendation == Recommendation.NO_GO else 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = _parse_args(argv)
    try:
        config = _apply_overrides(load_config(args.config), args)
    except ValidationError as exc:
        print(f"[ERROR] Invalid configuration:\n{exc}", file=sys.stderr)
        return 2

    setup_logging(config.logging)
    try:
        return asyncio.run(run(config, args.output))
    except ValidationFrameworkError as exc:
        logger.error("validation_failed", system="validation.cli", error=str(exc))
        return 2


if __name__ == "__main__":
    sys.exit(main())
