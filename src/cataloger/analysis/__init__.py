"""Analysis domain: C# front end, type analysis, collection and relationship inference."""

from cataloger.analysis.collection_resolver import (
    CollectionResolver,
    collection_name_for,
    primary_collections,
)
from cataloger.analysis.csharp import (
    LangConfig,
    clear_cache,
    get_lang_config,
    parse_file,
    parse_source,
    supported_extensions,
)
from cataloger.analysis.operation_extractor import OperationExtractor, parse_relaxed_json
from cataloger.analysis.relationships import RelationshipInferencer, merge_candidates
from cataloger.analysis.type_analyzer import TypeAnalyzer

__all__ = [
    "CollectionResolver",
    "LangConfig",
    "OperationExtractor",
    "RelationshipInferencer",
    "TypeAnalyzer",
    "clear_cache",
    "collection_name_for",
    "get_lang_config",
    "merge_candidates",
    "parse_file",
    "parse_source",
    "primary_collections",
    "supported_extensions",
]
