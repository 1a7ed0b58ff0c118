"""
Listing Image Fixer - Iterative fix, verify and retry for product images

Components:
- transport.py: Error classification and retry with backoff for Gemini calls
- editor.py: Generates compliant candidates using Gemini Image Editing
- verifier.py: Scores candidates against the marketplace rubric
- critique.py: Carries feedback from one attempt into the next
- refiner.py: Runs the fix/verify/retry loop for a single image
- pipeline.py: Processes a listing's images in sequence
"""

__version__ = '1.0.0'
