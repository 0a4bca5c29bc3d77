"""
Retrieval Errors - Exception taxonomy and error categorization
Only CorpusUnavailable is meant to cross the retriever boundary; the rest
are handled inside the retrieval core or by the API layer
"""
from typing import Dict, Optional
from enum import Enum
import time
import traceback


class RetrievalError(Exception):
    """Base class for retrieval core errors"""


class CorpusUnavailable(RetrievalError):
    """Corpus snapshot is missing or malformed (fatal at startup)"""


class EmbeddingProviderError(RetrievalError):
    """Embedding provider failed to produce a vector"""


class EmbeddingTimeout(EmbeddingProviderError):
    """Embedding provider did not answer within the configured timeout"""


class VectorIndexUnavailable(RetrievalError):
    """Vector index could not be built or loaded"""


class RecordNotFound(RetrievalError, KeyError):
    """No record with the requested id"""

    def __str__(self):
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ''


class InvalidQuery(RetrievalError, ValueError):
    """Caller passed an empty query or a negative limit"""


class ErrorCategory(Enum):
    """Error categories"""
    USER_ERROR = "user_error"  # Bad query input
    UNAVAILABLE = "unavailable"  # Corpus not loaded
    NOT_FOUND = "not_found"  # Record or scheme not found
    DEGRADED = "degraded"  # Embedding/vector failures (normally absorbed)
    SYSTEM_ERROR = "system_error"  # Anything else


STATUS_CODES = {
    ErrorCategory.USER_ERROR: 400,
    ErrorCategory.UNAVAILABLE: 503,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.DEGRADED: 503,
    ErrorCategory.SYSTEM_ERROR: 500,
}

USER_MESSAGES = {
    ErrorCategory.USER_ERROR: "Please check your query and try again.",
    ErrorCategory.UNAVAILABLE: "The fund data is not available right now.",
    ErrorCategory.NOT_FOUND: "The requested information was not found.",
    ErrorCategory.DEGRADED: "Search is temporarily degraded. Please try again in a moment.",
    ErrorCategory.SYSTEM_ERROR: "An internal error occurred.",
}


def categorize_error(error: Exception) -> ErrorCategory:
    """
    Categorize an exception

    Args:
        error: Exception to categorize

    Returns:
        Error category
    """
    if isinstance(error, InvalidQuery):
        return ErrorCategory.USER_ERROR
    if isinstance(error, CorpusUnavailable):
        return ErrorCategory.UNAVAILABLE
    if isinstance(error, RecordNotFound):
        return ErrorCategory.NOT_FOUND
    if isinstance(error, (EmbeddingProviderError, VectorIndexUnavailable)):
        return ErrorCategory.DEGRADED
    return ErrorCategory.SYSTEM_ERROR


def format_error_response(error: Exception, context: Optional[Dict] = None,
                          include_debug: bool = False) -> Dict:
    """
    Format error for API response

    Args:
        error: Exception
        context: Optional context information
        include_debug: Attach class, message and traceback (non-production only)

    Returns:
        Formatted error response
    """
    category = categorize_error(error)

    response = {
        'error': True,
        'error_type': category.value,
        'status_code': STATUS_CODES[category],
        'message': USER_MESSAGES[category],
        'error_id': f"{category.value}_{int(time.time())}"
    }

    if context:
        response['context'] = context

    if include_debug:
        response['debug'] = {
            'error_class': type(error).__name__,
            'error_message': str(error),
            'traceback': traceback.format_exc()[:1000]
        }

    return response
