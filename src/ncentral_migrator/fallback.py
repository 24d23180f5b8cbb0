"""REST-then-SOAP creation.

Creation calls try the REST API first and, when it fails, repeat the creation
through the SOAP API. Both outcomes are folded into a single result: the id of
the created entity, or a ``FallbackError`` carrying both causes.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .exceptions import ApiError, FallbackError, SoapError, SoapParseError

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")

Attempt = Callable[[], Awaitable[T]]


async def create_with_fallback(description: str, rest: Attempt[T], soap: Attempt[T] | None = None) -> T:
    """Run ``rest()``; on an API error run ``soap()`` if given.

    Args:
        description: What is being created, used in log and error messages
        rest: Primary REST attempt
        soap: Secondary SOAP attempt, or None when no SOAP client is available

    Returns:
        The result of the first attempt that succeeded

    Raises:
        ApiError: The REST error, when there is no SOAP attempt
        FallbackError: When both attempts failed or SOAP returned an ID <= 0
    """
    try:
        return await rest()
    except ApiError as rest_error:
        if soap is None:
            raise
        logger.warning(f"REST creation of {description} failed ({rest_error}), trying SOAP API")
        try:
            result = await soap()
            if isinstance(result, int) and result <= 0:
                msg = f"SOAP API returned ID {result}"
                raise SoapParseError(msg)
        except SoapError as soap_error:
            raise FallbackError(description, rest_error, soap_error) from soap_error
        logger.info(f"Created {description} via SOAP fallback")
        return result
