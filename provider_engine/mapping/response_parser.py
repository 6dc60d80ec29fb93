"""
Response parser: error classification, root resolution, shape correction and
dispatch to the structural parsers.
"""

import logging
from typing import Any, Dict, Optional, Sequence

from ..models.canonical import ProviderResponse
from ..models.provider_config import MappingConfig, ResponseType
from ..results import Ok, ParseResult
from . import structural_parsers as parsers
from .error_classifier import ErrorClassifier
from .field_mapper import map_fields, resolve_effective_fields
from .path_expression import TraversalContext, evaluate

logger = logging.getLogger(__name__)

_GENERIC_WRAPPERS = ('data', 'result', 'results', 'items', 'list', 'response')
_KEYED_WRAPPERS = (('country', 'countries'), ('service', 'services'), ('number', 'numbers'))

# Declared shapes that silently switch parser when the payload disagrees
_CORRECTABLE = frozenset({ResponseType.JSON_OBJECT, ResponseType.JSON_VALUE})
_TEXT_TYPES = frozenset({ResponseType.TEXT_REGEX, ResponseType.TEXT_LINES})


class ResponseParser:
    """Parses decoded responses for one provider according to its mappings"""

    def __init__(
        self,
        provider_name: str,
        mappings: Dict[str, MappingConfig],
        classifier: ErrorClassifier,
        leaf_fields: Optional[Sequence[str]] = None,
    ):
        self.provider_name = provider_name
        self.mappings = mappings
        self.classifier = classifier
        self.leaf_fields = tuple(leaf_fields) if leaf_fields else parsers.DEFAULT_LEAF_FIELDS

    def classify(self, response: ProviderResponse, mapping_key: str) -> ParseResult:
        """Run only the error classifier; ``Ok([])`` when no error matched"""
        error = self.classifier.classify(response.data, self.mappings.get(mapping_key))
        return error if error is not None else Ok([])

    def parse(self, response: ProviderResponse, mapping_key: str) -> ParseResult:
        mapping = self.mappings.get(mapping_key)

        error = self.classifier.classify(response.data, mapping)
        if error is not None:
            return error

        if mapping is None:
            logger.warning(f"No mapping for {self.provider_name}.{mapping_key}, using auto-parse")
            return Ok(parsers.auto_parse_response(response.data))

        if not response.is_json:
            text = to_str(response.data)
            if mapping.type in _TEXT_TYPES:
                return Ok(parsers.parse_text_response(text, mapping))
            # Plain-text answer to an endpoint mapped as JSON, e.g. a bare balance
            return Ok(parsers.parse_json_value(text.strip(), mapping))

        root = self.resolve_root(response.data, mapping, mapping_key)
        if root is None:
            logger.warning(f"Root path {mapping.root_path!r} for {self.provider_name}.{mapping_key} resolved to nothing")
            return Ok([])

        return Ok(self._dispatch(root, self.effective_type(root, mapping), mapping))

    def resolve_root(self, data: Any, mapping: MappingConfig, mapping_key: str) -> Any:
        root = data
        root_path = mapping.root_path
        if root_path and root_path != '$':
            if '*' in root_path:
                flat = parsers.values_by_path(data, root_path)
                if mapping.type is ResponseType.JSON_DICTIONARY:
                    root = {}
                    for part in flat:
                        if isinstance(part, dict):
                            root.update(part)
                else:
                    root = flat
            else:
                root = evaluate(data, root_path)

        if isinstance(root, dict):
            lowered = mapping_key.lower()
            wrappers = _GENERIC_WRAPPERS + tuple(w for hint, w in _KEYED_WRAPPERS if hint in lowered)
            for wrapper in wrappers:
                if root.get(wrapper) is not None:
                    logger.debug(f"Unwrapped '{wrapper}' for {self.provider_name}.{mapping_key}")
                    root = root[wrapper]
                    break
        return root

    @staticmethod
    def effective_type(root: Any, mapping: MappingConfig) -> ResponseType:
        declared = mapping.type
        if declared not in _CORRECTABLE:
            return declared
        if isinstance(root, list):
            return ResponseType.JSON_ARRAY
        if parsers.looks_like_dictionary(root):
            return ResponseType.JSON_DICTIONARY
        return declared

    def _dispatch(self, root: Any, shape: ResponseType, mapping: MappingConfig):
        if shape is ResponseType.JSON_ARRAY:
            if isinstance(root, dict):
                return [map_fields(root, resolve_effective_fields(root, mapping), TraversalContext(), mapping)]
            return parsers.parse_json_array(root, mapping)
        if shape is ResponseType.JSON_DICTIONARY:
            if not isinstance(root, (dict, list)):
                return parsers.parse_json_value(root, mapping)
            return parsers.parse_json_dictionary(root, mapping, leaf_fields=self.leaf_fields)
        if shape is ResponseType.JSON_OBJECT:
            if isinstance(root, dict):
                return [map_fields(root, resolve_effective_fields(root, mapping), TraversalContext(), mapping)]
            return parsers.parse_json_value(root, mapping)
        if shape is ResponseType.JSON_VALUE:
            return parsers.parse_json_value(root, mapping)
        if shape is ResponseType.JSON_ARRAY_POSITIONAL:
            return parsers.parse_json_array_positional(root, mapping)
        if shape is ResponseType.JSON_KEYED_VALUE:
            return parsers.parse_json_keyed_value(root, mapping)
        if shape is ResponseType.JSON_NESTED_ARRAY:
            return parsers.parse_json_nested_array(root, mapping)
        # A text mapping applied to a JSON body
        return parsers.auto_parse_response(root)


def to_str(data: Any) -> str:
    if isinstance(data, bytes):
        return data.decode('utf-8', errors='replace')
    return data if isinstance(data, str) else str(data)
