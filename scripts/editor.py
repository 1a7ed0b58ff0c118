#!/usr/bin/env python3
"""
Compliance Editor - Generation Port
Asks a Gemini image model to produce one corrected version of a listing image.
"""

import os
import sys
from typing import Any, Dict, Iterable, List, Optional

from google import genai
from google.genai import types

from models import ComplianceAnalysis, Role, SubjectMetadata
from transport import (
    BAD_REQUEST,
    SAFETY_BLOCK,
    UNKNOWN,
    ClassifiedError,
    GeminiTransport,
)
from utils import image_part, image_size, is_valid_image


class ComplianceEditor:
    """Generates corrected listing images using Gemini's image editing capabilities."""

    _DEFAULT_MODEL = "gemini-2.5-flash-image"
    _ASPECT_RATIOS = {
        "1:1": 1.0,
        "2:3": 2 / 3,
        "3:2": 3 / 2,
        "3:4": 3 / 4,
        "4:3": 4 / 3,
        "4:5": 4 / 5,
        "5:4": 5 / 4,
        "9:16": 9 / 16,
        "16:9": 16 / 9,
        "21:9": 21 / 9,
    }
    _SEVERITY_ORDER = {"critical": 0, "warning": 1, "info": 2}

    def __init__(self, api_key: Optional[str] = None, client=None):
        """Initialize the Editor with Gemini API credentials or a ready client."""
        self.client = client if client is not None else genai.Client(api_key=api_key)
        self.transport = GeminiTransport(self.client)
        self.model_name = os.getenv("GEMINI_IMAGE_MODEL") or self._DEFAULT_MODEL
        self.aspect_ratio = os.getenv("GEMINI_IMAGE_ASPECT_RATIO")

    def _get_role_instructions(self, role: Role) -> str:
        """Built-in instruction body for each asset role."""
        instructions = {
            Role.PRIMARY: """You are a professional e-commerce retoucher. Transform this product photo into a marketplace-compliant MAIN image.

REQUIRED CHANGES:
1. BACKGROUND:
   • Replace the background with pure white RGB(255,255,255)
   • No gradients, gray tones, props, or cast shadows on the background
   • Clean, crisp edge between product and background
2. PROHIBITED ELEMENTS:
   • Remove ALL badges ("Best Seller", "Amazon's Choice", discounts, ratings)
   • Remove text overlays, watermarks, borders, and logos that are not printed on the product
3. FRAMING:
   • Center the product and let it fill about 85% of the frame
   • Show the entire product; nothing cropped at the edges

HARD CONSTRAINTS:
   • Preserve exact product identity: shape, proportions, colors, labels, branding
   • Packaging text must stay legible and unchanged
   • Do NOT add accessories or items that are not part of the product
   • High resolution, sharp focus, no artifacts or halos""",
            Role.SECONDARY: """You are a professional e-commerce retoucher. Make this SECONDARY listing image marketplace-compliant while PRESERVING its scene.

REQUIRED CHANGES:
1. PROHIBITED OVERLAYS ONLY:
   • Remove "Best Seller", "Amazon's Choice", and similar marketplace badges
   • Remove watermarks and promotional stickers that are not part of the product

PRESERVE (do not alter):
   • The original background, setting, and lifestyle context; do NOT replace it with white
   • Infographic text, feature callouts, annotations, dimension lines, and icons
   • People, props, and the product demonstration

HARD CONSTRAINTS:
   • The product must remain the same product shown in the main image
   • Keep colors, lighting, and composition as they are
   • No artifacts, seams, or distorted text""",
        }
        return instructions[role]

    def _build_analysis_section(self, analysis: Optional[ComplianceAnalysis]) -> str:
        """Render the initial audit's violations and prompt seed."""
        if analysis is None:
            return ""

        section = ""
        if analysis.violations:
            ordered = sorted(
                analysis.violations,
                key=lambda v: self._SEVERITY_ORDER.get(v.severity, len(self._SEVERITY_ORDER))
            )
            lines = []
            for violation in ordered:
                line = f"  • [{violation.severity.upper()}] {violation.category}: {violation.message}"
                if violation.recommendation:
                    line += f" ({violation.recommendation})"
                lines.append(line)
            section += "\n\nDETECTED VIOLATIONS:\n" + "\n".join(lines)

        if analysis.generative_prompt:
            section += f"\n\nAUDIT GUIDANCE:\n{analysis.generative_prompt.strip()}"

        return section

    def _build_fix_prompt(
        self,
        role: Role,
        custom_instruction: Optional[str] = None,
        critique: Optional[str] = None,
        analysis: Optional[ComplianceAnalysis] = None,
        subject: Optional[SubjectMetadata] = None,
        has_reference: bool = False,
        has_prior: bool = False
    ) -> str:
        """Build the generation prompt: one instruction body plus supplementary context."""
        if custom_instruction and custom_instruction.strip():
            body = custom_instruction.strip()
        else:
            body = self._get_role_instructions(role) + self._build_analysis_section(analysis)

        context_parts = []
        if subject and subject.title:
            context_parts.append(f"Product: {subject.title}")
        if subject and subject.asin:
            context_parts.append(f"ASIN: {subject.asin}")
        context_section = ""
        if context_parts:
            context_section = "\n\nPRODUCT CONTEXT:\n" + "\n".join(f"  • {p}" for p in context_parts)

        critique_section = ""
        if critique:
            critique_section = (
                "\n\nFEEDBACK ON THE PREVIOUS ATTEMPT (fix these issues):\n"
                f"{critique.strip()}"
            )

        materials = ["The first image is the ORIGINAL product photo to correct."]
        if has_reference:
            materials.append(
                "A MAIN PRODUCT REFERENCE image is attached; the product in your output must match it exactly."
            )
        if has_prior:
            materials.append(
                "Your PREVIOUS ATTEMPT is attached; compare it with the original and do not repeat its mistakes."
            )
        materials_section = "\n\nATTACHED IMAGES:\n" + "\n".join(f"  • {m}" for m in materials)

        return f"{body}{context_section}{critique_section}{materials_section}\n\nReturn only the edited image."

    def _resolve_aspect_ratio(self, original: bytes) -> Optional[str]:
        """Resolve aspect ratio from env or derive the closest supported ratio."""
        if not self.aspect_ratio:
            return None
        ratio_setting = self.aspect_ratio.strip()
        if ratio_setting.lower() == "auto":
            size = image_size(original)
            if not size or size[1] == 0:
                return None
            ratio = size[0] / size[1]
            return min(self._ASPECT_RATIOS.items(), key=lambda item: abs(item[1] - ratio))[0]
        if ratio_setting in self._ASPECT_RATIOS:
            return ratio_setting
        print(f"Warning: Unsupported GEMINI_IMAGE_ASPECT_RATIO '{ratio_setting}' - ignoring", file=sys.stderr)
        return None

    def _build_generate_config(self, original: bytes) -> types.GenerateContentConfig:
        """Build GenerateContentConfig for image-only output and optional sizing."""
        config_kwargs: Dict[str, Any] = {"response_modalities": ["IMAGE"]}

        aspect_ratio = self._resolve_aspect_ratio(original)
        if aspect_ratio:
            config_kwargs["image_config"] = types.ImageConfig(aspect_ratio=aspect_ratio)

        return types.GenerateContentConfig(**config_kwargs)

    def _iter_response_parts(self, response) -> Iterable[Any]:
        """Yield parts from a Gemini response, handling multiple response shapes."""
        parts = getattr(response, "parts", None)
        if parts:
            return parts
        candidates = getattr(response, "candidates", None)
        if candidates:
            content = getattr(candidates[0], "content", None)
            if content is not None and getattr(content, "parts", None):
                return content.parts
        return []

    def _extract_image_bytes(self, response) -> Optional[bytes]:
        """Extract the final (non-thought) image bytes from the response."""
        non_thought_images = []
        thought_images = []

        for part in self._iter_response_parts(response):
            inline_data = getattr(part, "inline_data", None)
            if not inline_data:
                continue
            data = getattr(inline_data, "data", None)
            if not data:
                continue
            if getattr(part, "thought", False):
                thought_images.append(data)
            else:
                non_thought_images.append(data)

        if non_thought_images:
            return non_thought_images[-1]
        if thought_images:
            return thought_images[-1]
        return None

    def _no_image_error(self, response) -> ClassifiedError:
        """Explain why a successful response carried no image."""
        feedback = getattr(response, "prompt_feedback", None)
        if feedback is not None and getattr(feedback, "block_reason", None):
            return ClassifiedError(SAFETY_BLOCK, "Image generation was blocked by safety filters.")

        candidates = getattr(response, "candidates", None) or []
        reason = getattr(candidates[0], "finish_reason", None) if candidates else None
        reason = getattr(reason, "value", reason)

        if reason == "SAFETY":
            return ClassifiedError(SAFETY_BLOCK, "Image generation was blocked by safety filters.")
        if reason == "IMAGE_RECITATION":
            return ClassifiedError(
                BAD_REQUEST,
                "The model could not generate a corrected version. Try a different custom instruction."
            )
        return ClassifiedError(UNKNOWN, f"No image was generated (finish reason: {reason or 'none'}).")

    def generate(
        self,
        original: bytes,
        role: Role,
        reference_image: Optional[bytes] = None,
        prior_candidate: Optional[bytes] = None,
        critique: Optional[str] = None,
        custom_instruction: Optional[str] = None,
        analysis: Optional[ComplianceAnalysis] = None,
        subject: Optional[SubjectMetadata] = None
    ) -> bytes:
        """
        Produce one corrected candidate for a listing image.

        Args:
            original: Raw bytes of the image to correct
            role: PRIMARY or SECONDARY; selects the default instruction body
            reference_image: Primary asset image, used for SECONDARY role only
            prior_candidate: Previous attempt's output, so the model can self-diff
            critique: Feedback from the previous verification
            custom_instruction: Replaces the role's default instruction body
            analysis: Initial audit whose violations seed the default body
            subject: Product title / ASIN

        Returns:
            Candidate image bytes

        Raises:
            ClassifiedError: when no usable image could be produced
        """
        if role is not Role.SECONDARY:
            reference_image = None

        prompt = self._build_fix_prompt(
            role,
            custom_instruction=custom_instruction,
            critique=critique,
            analysis=analysis,
            subject=subject,
            has_reference=reference_image is not None,
            has_prior=prior_candidate is not None
        )

        contents: List[Any] = [prompt, "ORIGINAL IMAGE:", image_part(original)]
        if reference_image is not None:
            contents.extend(["MAIN PRODUCT REFERENCE:", image_part(reference_image)])
        if prior_candidate is not None:
            contents.extend(["PREVIOUS ATTEMPT:", image_part(prior_candidate)])

        response = self.transport.send(
            self.model_name,
            contents,
            self._build_generate_config(original)
        )

        image_data = self._extract_image_bytes(response)
        if not image_data:
            raise self._no_image_error(response)

        if not is_valid_image(image_data):
            raise ClassifiedError(UNKNOWN, "Generated image failed validation.")

        return image_data
