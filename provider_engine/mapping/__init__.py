"""
Response mapping: path expressions, structural parsers and error classification.
"""

from .path_expression import TraversalContext, compile_path, evaluate
from .error_classifier import ErrorClassifier
from .response_parser import ResponseParser

__all__ = ['TraversalContext', 'compile_path', 'evaluate', 'ErrorClassifier', 'ResponseParser']
