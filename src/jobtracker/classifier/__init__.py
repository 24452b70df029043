"""Email classification components.

This package provides the per-message processing stages:
- Normalizer turning Gmail MIME trees into flat text records
- Exclusion filter for senders the user never wants classified
- Batch classifier calling the remote job-application model
- Job extractor pulling company and role from job-related emails
"""

from jobtracker.classifier.exclusions import (
    ExclusionFilter,
    ExclusionMatch,
    ExclusionRule,
    compile_exclusions,
    extract_address,
    is_excluded,
)
from jobtracker.classifier.extractor import ExtractionResult, JobExtractor
from jobtracker.classifier.job_classifier import (
    BatchClassifier,
    ClassificationResult,
    build_input_text,
    is_job_related,
)
from jobtracker.classifier.normalizer import NormalizedEmail, html_to_text, normalize

__all__ = [
    # Exclusions
    "ExclusionFilter",
    "ExclusionMatch",
    "ExclusionRule",
    "compile_exclusions",
    "extract_address",
    "is_excluded",
    # Extraction
    "ExtractionResult",
    "JobExtractor",
    # Classification
    "BatchClassifier",
    "ClassificationResult",
    "build_input_text",
    "is_job_related",
    # Normalization
    "NormalizedEmail",
    "html_to_text",
    "normalize",
]
