"""Sampling domain: live-database sampling, observed schemas and PII redaction."""

from cataloger.sampling.pii import PiiDetector, name_tokens
from cataloger.sampling.profiler import bson_type, classify_string, profile_documents
from cataloger.sampling.sampler import MongoSampler

__all__ = [
    "MongoSampler",
    "PiiDetector",
    "bson_type",
    "classify_string",
    "name_tokens",
    "profile_documents",
]
