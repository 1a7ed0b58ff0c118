#!/usr/bin/env python3
"""
Critique carry-over between refinement attempts.
"""

from typing import Optional

from models import VerificationResult


def merge_critique(result: Optional[VerificationResult]) -> Optional[str]:
    """
    Render a rejected verification as feedback for the next generation call.

    Only the given result is used; critiques from earlier attempts are
    superseded rather than appended, so the prompt does not grow with the
    number of attempts.
    """
    if result is None:
        return None

    parts = []
    critique = result.critique.strip()
    if critique:
        parts.append(critique)

    improvements = [imp.strip() for imp in result.improvements if imp and imp.strip()]
    if improvements:
        parts.append("Specific fixes needed:\n" + "\n".join(f"- {imp}" for imp in improvements))

    if not parts:
        return None
    return "\n\n".join(parts)
