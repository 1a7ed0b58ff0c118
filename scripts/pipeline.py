#!/usr/bin/env python3
"""
Fix Pipeline - Batch Coordinator
Runs the Refiner over a listing's images one at a time.
"""

import argparse
import os
import sys
import time
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from editor import ComplianceEditor
from models import Asset, Role, RunOutcome, RunResult, SubjectMetadata
from refiner import Refiner
from verifier import ComplianceVerifier


@dataclass
class BatchReport:
    """Outcome of every run in a batch, in processing order."""

    results: List[RunResult] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def count(self, outcome: RunOutcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    @property
    def accepted(self) -> int:
        return self.count(RunOutcome.ACCEPTED)

    @property
    def exhausted(self) -> int:
        return self.count(RunOutcome.EXHAUSTED)

    @property
    def aborted(self) -> int:
        return self.count(RunOutcome.ABORTED)


class FixPipeline:
    """Sequential batch coordinator; never runs two assets at once."""

    asset_delay = 1.0

    def __init__(
        self,
        refiner: Refiner,
        subject: Optional[SubjectMetadata] = None,
        asset_delay: Optional[float] = None
    ):
        self.refiner = refiner
        self.subject = subject
        if asset_delay is not None:
            self.asset_delay = asset_delay

    def process_asset(self, asset: Asset, custom_instruction: Optional[str] = None) -> RunResult:
        """
        Fix a single asset and write the accepted candidate back onto it.

        Any unexpected error is recorded as an aborted run so the batch can
        carry on with the next asset.
        """
        print(f"\n{'='*60}")
        print(f"Fixing {asset.role.value}: {asset.name or asset.id}")
        print(f"{'='*60}\n")

        if asset.reference_image is not None:
            print("  Cross-referencing with the primary product image")

        try:
            result = self.refiner.refine(asset, custom_instruction=custom_instruction, subject=self.subject)
        except Exception as e:
            print(f"✗ Error fixing {asset.name or asset.id}: {e}", file=sys.stderr)
            traceback.print_exc()
            return RunResult(asset_id=asset.id, outcome=RunOutcome.ABORTED, error=e)

        if result.outcome is RunOutcome.ACCEPTED:
            asset.fixed_image = result.image
            print(f"✓ Fix complete for {asset.name or asset.id}")
        elif result.outcome is RunOutcome.EXHAUSTED:
            print(f"  Fix for {asset.name or asset.id} did not pass (last score {result.score})")
        else:
            print(f"✗ Fix failed for {asset.name or asset.id}: {result.message}", file=sys.stderr)

        return result

    def run(self, assets: List[Asset], custom_instruction: Optional[str] = None) -> BatchReport:
        """Fix every asset that needs it, in the given order."""
        report = BatchReport()
        pending = [a for a in assets if a.needs_fix]
        report.skipped = [a.id for a in assets if not a.needs_fix]

        print(f"Found {len(pending)} image(s) to fix ({len(report.skipped)} already compliant)")

        for index, asset in enumerate(pending):
            if index > 0:
                time.sleep(self.asset_delay)
            report.results.append(self.process_asset(asset, custom_instruction))

        print("\n" + "="*60)
        print("Batch Summary")
        print("="*60)
        print(f"  Accepted: {report.accepted}, exhausted: {report.exhausted}, aborted: {report.aborted}")
        print("="*60 + "\n")

        return report


def load_assets(primary: Optional[Path], secondaries: List[Path]) -> List[Asset]:
    """Read image files into assets; secondaries reference the primary."""
    assets = []
    primary_asset = None
    if primary is not None:
        primary_asset = Asset(id="primary", image=primary.read_bytes(), role=Role.PRIMARY, name=primary.name)
        assets.append(primary_asset)

    for index, path in enumerate(secondaries, 1):
        assets.append(Asset(
            id=f"secondary-{index}",
            image=path.read_bytes(),
            role=Role.SECONDARY,
            name=path.name,
            reference=primary_asset
        ))
    return assets


def write_results(report: BatchReport, assets: List[Asset], output_dir: Path) -> List[Path]:
    """Save every candidate that came back with an image."""
    output_dir.mkdir(parents=True, exist_ok=True)
    by_id = {a.id: a for a in assets}
    written = []
    for result in report.results:
        if result.image is None:
            continue
        asset = by_id[result.asset_id]
        prefix = "fixed" if result.outcome is RunOutcome.ACCEPTED else "unverified"
        name = asset.name or f"{asset.id}.png"
        path = output_dir / f"{prefix}_{name}"
        path.write_bytes(result.image)
        written.append(path)
    return written


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for fixing listing images."""
    parser = argparse.ArgumentParser(
        description="Generate marketplace-compliant versions of listing images."
    )
    parser.add_argument("--primary", type=Path, help="Main (hero) product image")
    parser.add_argument(
        "--secondary",
        type=Path,
        action="append",
        default=[],
        help="Secondary image (repeatable)",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("fixed"),
        help="Where to write corrected images (default: ./fixed)",
    )
    parser.add_argument("--title", help="Product title passed to the generator")
    parser.add_argument("--asin", help="Product ASIN passed to the generator")
    parser.add_argument("--instruction", help="Custom instruction replacing the default fix rules")
    args = parser.parse_args(argv)

    if args.primary is None and not args.secondary:
        parser.error("at least one of --primary or --secondary is required")

    for path in [args.primary, *args.secondary]:
        if path is not None and not path.exists():
            print(f"Error: Image not found: {path}", file=sys.stderr)
            return 1

    load_dotenv()
    api_key = os.getenv("GEMINI_API_KEY")
    if not api_key:
        print("Error: GEMINI_API_KEY environment variable not set", file=sys.stderr)
        return 1

    refiner = Refiner(ComplianceEditor(api_key), ComplianceVerifier(api_key))
    subject = SubjectMetadata(title=args.title, asin=args.asin) if (args.title or args.asin) else None
    pipeline = FixPipeline(refiner, subject=subject)

    assets = load_assets(args.primary, args.secondary)
    report = pipeline.run(assets, custom_instruction=args.instruction)

    for path in write_results(report, assets, args.output_dir):
        print(f"  Saved: {path}")

    return 1 if report.aborted else 0


if __name__ == "__main__":
    raise SystemExit(main())
