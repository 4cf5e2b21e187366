"""
TenderQA - Retrieval-augmented question answering over tender documents.

Answers bidder questions from OCR-extracted tender text with cited
evidence, and escalates to a human reviewer whenever the answer cannot be
trusted automatically.
"""

__version__ = "1.0.0"
__author__ = "TenderExtractPro"
