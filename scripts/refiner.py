#!/usr/bin/env python3
"""
Refiner - fix, verify, retry.

Drives one asset through at most three generate/verify attempts:

    generating -> verifying -> passed
                            -> retrying -> generating   (attempt < max)
                            -> exhausted                (attempt == max)
    any state  -> aborted                               (terminal port error)

Expected outcomes are returned as a RunResult; nothing here raises for a
rejected image or a failed oracle call.
"""

import sys
import time
from dataclasses import replace
from typing import Callable, Optional

from critique import merge_critique
from models import (
    Asset,
    Attempt,
    AttemptStatus,
    RefinementRun,
    RunOutcome,
    RunResult,
    RunState,
    SubjectMetadata,
)
from transport import ClassifiedError


class Refiner:
    """Runs the bounded fix-verify-retry loop for a single asset."""

    # Hard ceiling on generation calls per run
    MAX_ATTEMPTS = 3
    max_attempts = MAX_ATTEMPTS
    retry_delay = 2.0

    def __init__(
        self,
        editor,
        verifier,
        on_update: Optional[Callable[[RefinementRun], None]] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None
    ):
        """
        Args:
            editor: Generation port (see editor.ComplianceEditor)
            verifier: Verification port (see verifier.ComplianceVerifier)
            on_update: Observer called with a snapshot after every state change
            max_attempts: Lower attempt budget; clamped to 1..MAX_ATTEMPTS
        """
        self.editor = editor
        self.verifier = verifier
        self.on_update = on_update
        if max_attempts is not None:
            self.max_attempts = max(1, min(max_attempts, self.MAX_ATTEMPTS))
        if retry_delay is not None:
            self.retry_delay = retry_delay

    def _emit(self, run: RefinementRun) -> RefinementRun:
        if self.on_update is not None:
            self.on_update(run)
        return run

    def _set_last_attempt(self, run: RefinementRun, **changes) -> RefinementRun:
        attempts = run.attempts[:-1] + (replace(run.attempts[-1], **changes),)
        return replace(run, attempts=attempts)

    def _abort(self, run: RefinementRun, error: ClassifiedError) -> RunResult:
        print(f"  ✗ Attempt {run.attempt} failed: {error.message}", file=sys.stderr)
        if run.attempts:
            run = self._set_last_attempt(run, status=AttemptStatus.FAILED)
        run = self._emit(replace(run, state=RunState.ABORTED, outcome=RunOutcome.ABORTED))
        return RunResult(
            asset_id=run.asset_id,
            outcome=RunOutcome.ABORTED,
            error=error,
            attempts=run.attempts
        )

    def refine(
        self,
        asset: Asset,
        custom_instruction: Optional[str] = None,
        prior_candidate: Optional[bytes] = None,
        subject: Optional[SubjectMetadata] = None
    ) -> RunResult:
        """
        Produce a compliant version of an asset's image.

        Args:
            asset: Image to fix; its reference (if SECONDARY) is re-read per attempt
            custom_instruction: Replaces the default role instructions
            prior_candidate: Earlier result to regenerate from
            subject: Product title / ASIN passed to the generator

        Returns:
            RunResult with outcome ACCEPTED, EXHAUSTED, or ABORTED
        """
        run = self._emit(RefinementRun(
            asset_id=asset.id,
            max_attempts=self.max_attempts,
            prior_candidate=prior_candidate
        ))

        while True:
            print(f"  Attempt {run.attempt}/{run.max_attempts}: generating candidate...")
            run = self._emit(replace(
                run,
                state=RunState.GENERATING,
                attempts=run.attempts + (Attempt(number=run.attempt, status=AttemptStatus.GENERATING),)
            ))

            try:
                candidate = self.editor.generate(
                    asset.image,
                    asset.role,
                    reference_image=asset.reference_image,
                    prior_candidate=run.prior_candidate,
                    critique=run.critique,
                    custom_instruction=custom_instruction,
                    # The audit only seeds the first attempt; later ones carry critique
                    analysis=asset.analysis if run.attempt == 1 else None,
                    subject=subject
                )
            except ClassifiedError as e:
                return self._abort(run, e)

            run = self._set_last_attempt(run, candidate=candidate, status=AttemptStatus.VERIFYING)
            run = self._emit(replace(run, state=RunState.VERIFYING, prior_candidate=candidate))
            print(f"  Attempt {run.attempt}/{run.max_attempts}: verifying candidate...")

            try:
                verification = self.verifier.verify(
                    asset.image,
                    candidate,
                    asset.role,
                    reference_image=asset.reference_image
                )
            except ClassifiedError as e:
                if not e.retryable:
                    return self._abort(run, e)
                print(
                    f"  Warning: verification unavailable ({e.message}); using generated image",
                    file=sys.stderr
                )
                run = self._set_last_attempt(run, status=AttemptStatus.PASSED)
                run = self._emit(replace(run, state=RunState.PASSED, outcome=RunOutcome.ACCEPTED))
                return RunResult(
                    asset_id=run.asset_id,
                    outcome=RunOutcome.ACCEPTED,
                    image=candidate,
                    attempts=run.attempts,
                    degraded=True
                )

            if verification.accepted:
                print(f"  ✓ Passed verification: {verification.score}/100")
                run = self._set_last_attempt(run, status=AttemptStatus.PASSED, verification=verification)
                run = self._emit(replace(run, state=RunState.PASSED, outcome=RunOutcome.ACCEPTED))
                return RunResult(
                    asset_id=run.asset_id,
                    outcome=RunOutcome.ACCEPTED,
                    image=candidate,
                    score=verification.score,
                    verification=verification,
                    attempts=run.attempts
                )

            run = self._set_last_attempt(run, status=AttemptStatus.FAILED, verification=verification)
            if not verification.subject_match:
                print("  Subject mismatch: candidate does not show the same product")
            print(f"  Issues found: {verification.critique}")

            if run.attempt >= run.max_attempts:
                print("  Max attempts reached. Using last candidate.")
                run = self._emit(replace(run, state=RunState.EXHAUSTED, outcome=RunOutcome.EXHAUSTED))
                return RunResult(
                    asset_id=run.asset_id,
                    outcome=RunOutcome.EXHAUSTED,
                    image=candidate,
                    score=verification.score,
                    verification=verification,
                    attempts=run.attempts
                )

            run = self._emit(replace(
                run,
                state=RunState.RETRYING,
                critique=merge_critique(verification),
                attempt=run.attempt + 1
            ))
            print(f"  Retrying with feedback in {self.retry_delay:.1f}s...")
            time.sleep(self.retry_delay)
