"""
Run the structural checks against a synthesized template.

Usage:
    cd infra && cdk synth
    python scripts/verify_template.py
    python scripts/verify_template.py --template infra/cdk.out/AdcaseInfraStack.template.json
    python scripts/verify_template.py --strict    # warnings fail too

Exits 1 when an error-severity check fails (or any check, with --strict).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from stacks.checks import failed_errors, run_checks

DEFAULT_TEMPLATE = Path("infra") / "cdk.out" / "AdcaseInfraStack.template.json"

logger = logging.getLogger("verify_template")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Structural checks for the Adcase stack")
    parser.add_argument("--template", type=Path, default=DEFAULT_TEMPLATE,
                        help="Path to the synthesized CloudFormation template")
    parser.add_argument("--strict", action="store_true",
                        help="Treat failed warnings as failures")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(message)s",
    )
    args = parse_args(argv)

    if not args.template.is_file():
        logger.error("Template not found: %s  (run `cdk synth` in infra/ first)", args.template)
        sys.exit(1)

    try:
        template = json.loads(args.template.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        logger.error("Template is not valid JSON: %s", e)
        sys.exit(1)

    results = run_checks(template)
    for r in results:
        if r.passed:
            logger.info("PASS  %-28s %s", r.name, r.detail)
        elif r.severity == "warning":
            logger.warning("WARN  %-28s %s", r.name, r.detail)
        else:
            logger.error("FAIL  %-28s %s", r.name, r.detail)

    failures = failed_errors(results)
    if args.strict:
        failures = [r for r in results if not r.passed]

    if failures:
        logger.error("%d of %d checks failed.", len(failures), len(results))
        sys.exit(1)

    logger.info("All %d checks passed.", len(results))


if __name__ == "__main__":
    main()
