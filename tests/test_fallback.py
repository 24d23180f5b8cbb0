"""
Tests for REST-then-SOAP creation.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from ncentral_migrator.exceptions import FallbackError, NotFoundError, ServerError, SoapFaultError, SoapParseError
from ncentral_migrator.fallback import create_with_fallback


@pytest.mark.unit
class TestCreateWithFallback:
    """Test the fallback combinator."""

    @pytest.mark.asyncio
    async def test_rest_success_skips_soap(self) -> None:
        """SOAP is not touched when REST works."""
        rest = AsyncMock(return_value=10)
        soap = AsyncMock(return_value=20)

        assert await create_with_fallback("customer 'Acme'", rest, soap) == 10
        soap.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_soap_used_after_rest_failure(self) -> None:
        """An API error on REST falls through to SOAP."""
        rest = AsyncMock(side_effect=ServerError(500, "boom"))
        soap = AsyncMock(return_value=20)

        assert await create_with_fallback("customer 'Acme'", rest, soap) == 20

    @pytest.mark.asyncio
    async def test_both_failures_are_reported(self) -> None:
        """FallbackError keeps both causes."""
        rest_error = NotFoundError("/api/service-orgs/60/customers")
        soap_error = SoapFaultError("Client", "Invalid customer")

        with pytest.raises(FallbackError) as exc_info:
            await create_with_fallback(
                "customer 'Acme'", AsyncMock(side_effect=rest_error), AsyncMock(side_effect=soap_error)
            )

        error = exc_info.value
        assert error.rest_error is rest_error
        assert error.soap_error is soap_error
        assert "customer 'Acme'" in str(error)
        assert "Invalid customer" in str(error)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("soap_id", [0, -1])
    async def test_non_positive_soap_id_is_a_failure(self, soap_id: int) -> None:
        """An ID <= 0 from SOAP means nothing was created."""
        rest_error = ServerError(500, "boom")

        with pytest.raises(FallbackError) as exc_info:
            await create_with_fallback(
                "customer 'Acme'", AsyncMock(side_effect=rest_error), AsyncMock(return_value=soap_id)
            )

        assert exc_info.value.rest_error is rest_error
        assert isinstance(exc_info.value.soap_error, SoapParseError)
        assert f"returned ID {soap_id}" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_without_soap_rest_error_propagates(self) -> None:
        """With no SOAP attempt the original REST error is raised."""
        with pytest.raises(ServerError):
            await create_with_fallback("site 'HQ'", AsyncMock(side_effect=ServerError(500, "boom")))

    @pytest.mark.asyncio
    async def test_non_api_errors_are_not_caught(self) -> None:
        """Programming errors are not turned into a fallback."""
        soap = AsyncMock()

        with pytest.raises(KeyError):
            await create_with_fallback("site 'HQ'", AsyncMock(side_effect=KeyError("x")), soap)
        soap.assert_not_awaited()
