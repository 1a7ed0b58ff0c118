#!/usr/bin/env python3
"""
Compliance Verifier - Verification Port
Uses Gemini Vision to score a candidate image against the compliance rubric.
"""

import json
import os
import re
import sys
from typing import Any, List, Optional

from google import genai
from google.genai import types
from pydantic import ValidationError

from models import ACCEPTANCE_THRESHOLD, Role, VerificationResult
from transport import BAD_REQUEST, ClassifiedError, GeminiTransport
from utils import image_part

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


class ComplianceVerifier:
    """Scores generated listing images and explains what still fails."""

    _DEFAULT_MODEL = "gemini-2.5-flash"
    # Allowed drift, in points, between the declared and the weighted composite
    composite_tolerance = 2.0

    def __init__(self, api_key: Optional[str] = None, client=None):
        """Initialize the Verifier with Gemini API credentials or a ready client."""
        self.client = client if client is not None else genai.Client(api_key=api_key)
        self.transport = GeminiTransport(self.client)
        self.model_name = os.getenv("GEMINI_VERIFY_MODEL") or self._DEFAULT_MODEL

    def _get_compliance_rubric(self, role: Role) -> str:
        """Role-specific compliance check."""
        if role is Role.PRIMARY:
            return """For MAIN images, verify:
- Background is a uniform, neutral PURE WHITE RGB(255,255,255)
  * Sample corners and edges; no gray tones, gradients, or shadows
  * Clean edge between product and background
- All prohibited badges and overlays REMOVED
- Product occupies ~85% of the frame and is well centered"""
        return """For SECONDARY images, verify:
- The original scene/background is PRESERVED, not replaced (it should NOT be white)
- ONLY prohibited badges and overlays were removed
- Infographic callouts and annotations are intact
- Product demonstration context is intact"""

    def _get_prompt(self, role: Role, has_reference: bool = False) -> str:
        """System instruction for the verification model."""
        reference_line = (
            "\n3. MAIN PRODUCT REFERENCE - The generated product must match this product"
            if has_reference else ""
        )
        return f"""You are a strict marketplace image compliance verifier. Evaluate an AI-corrected product image.

You will receive:
1. ORIGINAL IMAGE - The source product image with violations
2. GENERATED IMAGE - The corrected version to verify{reference_line}

CHECK 1: SUBJECT IDENTITY (Weight: 40%)
- Is it visually the SAME product? Labels, colors, shape, and proportions preserved?
- If not, subjectMatch MUST be false.

CHECK 2: COMPLIANCE FIXES (Weight: 30%)
{self._get_compliance_rubric(role)}

CHECK 3: QUALITY (Weight: 20%)
- Resolution, focus, no compression artifacts, no halos, professional look

CHECK 4: NO NEW ISSUES (Weight: 10%)
- No distorted packaging text, warped shapes, floating elements, or editing seams

SCORING FORMULA:
score = identity * 0.40 + compliance * 0.30 + quality * 0.20 + noNewIssues * 0.10

Your response must be ONLY valid JSON with exactly this structure:
{{
  "score": <0-100 weighted score>,
  "isSatisfactory": <true only if score >= {ACCEPTANCE_THRESHOLD:.0f} AND subjectMatch is true>,
  "subjectMatch": <true if this is the SAME product>,
  "componentScores": {{
    "identity": <0-100>,
    "compliance": <0-100>,
    "quality": <0-100>,
    "noNewIssues": <0-100>
  }},
  "critique": "the most important issues that still need fixing",
  "improvements": ["specific actionable fix 1", "specific actionable fix 2"],
  "passedChecks": ["what the generated image got right"],
  "failedChecks": ["what still needs to be fixed"],
  "thinkingSteps": ["short step-by-step notes of your verification"]
}}

CRITICAL: Output ONLY the JSON object. Be strict; flag for retry rather than pass a flawed image."""

    def _parse_response(self, response_text: Optional[str]) -> VerificationResult:
        """Parse and validate the verifier's JSON; malformed output is a terminal bad_request."""
        response_text = (response_text or "").strip()

        # Remove markdown code fences if present
        response_text = _FENCE_OPEN.sub('', response_text)
        response_text = _FENCE_CLOSE.sub('', response_text).strip()

        try:
            payload = json.loads(response_text)
        except json.JSONDecodeError as e:
            raise ClassifiedError(BAD_REQUEST, f"Could not parse verification result: {e}") from e

        if not isinstance(payload, dict):
            raise ClassifiedError(BAD_REQUEST, "Verification result must be a JSON object")

        try:
            return VerificationResult.model_validate(payload)
        except ValidationError as e:
            raise ClassifiedError(
                BAD_REQUEST,
                f"Verification result failed validation: {e.error_count()} invalid field(s)"
            ) from e

    def _check_consistency(self, result: VerificationResult) -> None:
        """Report, without correcting, oracle output that contradicts the scoring rules."""
        weighted = result.component_scores.weighted_score()
        if abs(weighted - result.score) > self.composite_tolerance:
            print(
                f"  Warning: declared score {result.score} differs from weighted "
                f"sub-scores {weighted}; using declared score",
                file=sys.stderr
            )

        expected = result.score >= ACCEPTANCE_THRESHOLD and result.subject_match
        if result.is_satisfactory != expected:
            print(
                f"  Warning: isSatisfactory={result.is_satisfactory} disagrees with "
                f"score {result.score} / subjectMatch={result.subject_match}",
                file=sys.stderr
            )

    def verify(
        self,
        original: bytes,
        candidate: bytes,
        role: Role,
        reference_image: Optional[bytes] = None
    ) -> VerificationResult:
        """
        Score a candidate image against the original.

        Args:
            original: Raw bytes of the source image
            candidate: Raw bytes of the generated image
            role: PRIMARY or SECONDARY; selects the compliance rubric
            reference_image: Primary asset image, used for SECONDARY role only

        Returns:
            Validated VerificationResult

        Raises:
            ClassifiedError: on transport failure or a malformed response
        """
        if role is not Role.SECONDARY:
            reference_image = None

        contents: List[Any] = [
            f"Verify this {role.value} AI-generated image against marketplace compliance requirements.",
            "=== ORIGINAL IMAGE (source with violations) ===",
            image_part(original),
            "=== GENERATED IMAGE (needs verification) ===",
            image_part(candidate),
        ]
        if reference_image is not None:
            contents.extend([
                "=== MAIN PRODUCT REFERENCE (generated image must match this product) ===",
                image_part(reference_image),
            ])
        contents.append("Execute the full verification protocol and return the JSON assessment.")

        config = types.GenerateContentConfig(
            system_instruction=self._get_prompt(role, has_reference=reference_image is not None),
            response_mime_type="application/json"
        )

        response = self.transport.send(self.model_name, contents, config)
        result = self._parse_response(getattr(response, "text", None))
        self._check_consistency(result)

        print(f"  Verification score: {result.score}/100 (subject match: {result.subject_match})")
        for check in result.failed_checks[:3]:
            print(f"    ✗ {check}")

        return result
