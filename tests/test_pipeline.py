"""Tests for pipeline module."""

import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Add scripts to path
sys.path.insert(0, str(Path(__file__).parent.parent / 'scripts'))

from models import Asset, ComplianceAnalysis, Role, RunOutcome, RunResult
from pipeline import BatchReport, FixPipeline, load_assets, main, write_results
from transport import ClassifiedError


class ScriptedRefiner:
    """Refiner stand-in that returns a scripted outcome per asset id."""

    def __init__(self, outcomes):
        self.outcomes = outcomes
        self.calls = []

    def refine(self, asset, custom_instruction=None, subject=None, prior_candidate=None):
        self.calls.append((asset.id, asset.reference_image, custom_instruction))
        outcome = self.outcomes[asset.id]
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is RunOutcome.ABORTED:
            return RunResult(asset_id=asset.id, outcome=outcome, error=ClassifiedError("auth_error", "bad key"))
        return RunResult(asset_id=asset.id, outcome=outcome, image=f"{asset.id}-fixed".encode(), score=85)


@pytest.fixture(autouse=True)
def no_sleep():
    with patch('time.sleep') as mock_sleep:
        yield mock_sleep


@pytest.fixture
def listing():
    main_asset = Asset(id="main", image=b"main", role=Role.PRIMARY, name="main.jpg")
    return [
        main_asset,
        Asset(id="side-1", image=b"side1", role=Role.SECONDARY, name="side1.jpg", reference=main_asset),
        Asset(id="side-2", image=b"side2", role=Role.SECONDARY, name="side2.jpg", reference=main_asset),
    ]


class TestFixPipeline:
    """Tests for the batch coordinator."""

    def test_processes_assets_in_order(self, listing):
        """Assets are fixed strictly in the order given."""
        refiner = ScriptedRefiner({a.id: RunOutcome.ACCEPTED for a in listing})

        report = FixPipeline(refiner).run(listing)

        assert [c[0] for c in refiner.calls] == ["main", "side-1", "side-2"]
        assert [r.asset_id for r in report.results] == ["main", "side-1", "side-2"]
        assert report.accepted == 3

    def test_delay_between_assets(self, listing, no_sleep):
        """A 1s pause separates consecutive runs, none after the last."""
        refiner = ScriptedRefiner({a.id: RunOutcome.ACCEPTED for a in listing})

        FixPipeline(refiner).run(listing)

        assert [c[0][0] for c in no_sleep.call_args_list] == [1.0, 1.0]

    def test_failures_do_not_stop_batch(self, listing):
        """Aborted runs and unexpected errors are recorded and the batch continues."""
        refiner = ScriptedRefiner({
            "main": RunOutcome.ABORTED,
            "side-1": RuntimeError("boom"),
            "side-2": RunOutcome.EXHAUSTED,
        })

        report = FixPipeline(refiner).run(listing)

        assert [r.outcome for r in report.results] == [
            RunOutcome.ABORTED, RunOutcome.ABORTED, RunOutcome.EXHAUSTED
        ]
        assert report.aborted == 2
        assert report.exhausted == 1
        assert isinstance(report.results[1].error, RuntimeError)

    def test_accepted_candidate_written_back(self, listing):
        """Only accepted candidates are stored on the asset."""
        refiner = ScriptedRefiner({
            "main": RunOutcome.ACCEPTED,
            "side-1": RunOutcome.EXHAUSTED,
            "side-2": RunOutcome.ABORTED,
        })

        FixPipeline(refiner).run(listing)

        assert listing[0].fixed_image == b"main-fixed"
        assert listing[1].fixed_image is None
        assert listing[2].fixed_image is None

    def test_secondary_sees_fixed_primary(self, listing):
        """Secondaries fixed after the primary reference its accepted candidate."""
        refiner = ScriptedRefiner({a.id: RunOutcome.ACCEPTED for a in listing})

        FixPipeline(refiner).run(listing)

        assert refiner.calls[0][1] is None
        assert refiner.calls[1][1] == b"main-fixed"
        assert refiner.calls[2][1] == b"main-fixed"

    def test_compliant_assets_skipped(self, listing):
        """Assets whose audit passed are not refined."""
        listing[1].analysis = ComplianceAnalysis(overall_score=95, status="PASS")
        refiner = ScriptedRefiner({a.id: RunOutcome.ACCEPTED for a in listing})

        report = FixPipeline(refiner).run(listing)

        assert [c[0] for c in refiner.calls] == ["main", "side-2"]
        assert report.skipped == ["side-1"]

    def test_custom_instruction_forwarded(self, listing):
        """The batch-wide custom instruction reaches each run."""
        refiner = ScriptedRefiner({a.id: RunOutcome.ACCEPTED for a in listing})

        FixPipeline(refiner).run(listing[:1], custom_instruction="Light gray background")

        assert refiner.calls[0][2] == "Light gray background"


class TestFileHelpers:
    """Tests for CLI file helpers."""

    def test_load_assets_links_secondaries(self, tmp_path):
        """Secondary assets reference the primary."""
        (tmp_path / "main.jpg").write_bytes(b"main")
        (tmp_path / "side.jpg").write_bytes(b"side")

        assets = load_assets(tmp_path / "main.jpg", [tmp_path / "side.jpg"])

        assert [a.role for a in assets] == [Role.PRIMARY, Role.SECONDARY]
        assert assets[1].reference is assets[0]
        assert assets[1].reference_image == b"main"

    def test_load_assets_without_primary(self, tmp_path):
        """Secondaries alone have no reference."""
        (tmp_path / "side.jpg").write_bytes(b"side")

        assets = load_assets(None, [tmp_path / "side.jpg"])

        assert assets[0].reference_image is None

    def test_write_results(self, tmp_path, listing):
        """Accepted and exhausted candidates are saved with distinct prefixes."""
        report = BatchReport(results=[
            RunResult(asset_id="main", outcome=RunOutcome.ACCEPTED, image=b"a"),
            RunResult(asset_id="side-1", outcome=RunOutcome.EXHAUSTED, image=b"b"),
            RunResult(asset_id="side-2", outcome=RunOutcome.ABORTED),
        ])

        written = write_results(report, listing, tmp_path / "out")

        assert [p.name for p in written] == ["fixed_main.jpg", "unverified_side1.jpg"]
        assert (tmp_path / "out" / "fixed_main.jpg").read_bytes() == b"a"


class TestMain:
    """Tests for the CLI entry point."""

    def test_missing_image(self, tmp_path, capsys):
        """A missing input file exits with an error."""
        assert main(["--primary", str(tmp_path / "nope.jpg")]) == 1
        assert "Image not found" in capsys.readouterr().err

    def test_missing_api_key(self, tmp_path, monkeypatch, capsys):
        """GEMINI_API_KEY is required."""
        (tmp_path / "main.jpg").write_bytes(b"main")
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)

        with patch('pipeline.load_dotenv'):
            assert main(["--primary", str(tmp_path / "main.jpg")]) == 1
        assert "GEMINI_API_KEY" in capsys.readouterr().err

    def test_requires_an_image(self):
        """Running without images is a usage error."""
        with pytest.raises(SystemExit):
            main([])
