"""Domain exception -> HTTP status translation shared by the routers."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException, status

from sandcastle.orchestrator.errors import ConfigurationError, NotFoundError, ProviderError, ValidationError


@contextmanager
def http_errors() -> Iterator[None]:
    """Re-raise domain exceptions from the enclosed block as ``HTTPException``.

    - ``NotFoundError`` -> 404
    - ``ValidationError`` -> 400
    - ``ConfigurationError`` -> 503
    - ``ProviderError`` / ``TimeoutError`` -> 502

    Anything else propagates unchanged (500).
    """
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=str(exc)) from None
    except ValidationError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from None
    except ConfigurationError as exc:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from None
    except (ProviderError, TimeoutError) as exc:
        raise HTTPException(status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from None
