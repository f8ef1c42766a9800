"""Execution of Supabase queries with store failures translated."""

from typing import Any

import httpx
from postgrest.exceptions import APIError

from teletherapy.domain.outcomes import StoreUnavailableError


def run_query(query: Any) -> Any:
    """Execute a PostgREST query builder.

    PostgREST rejections and transport errors surface as
    ``StoreUnavailableError`` so services never see client-library types.
    """
    try:
        return query.execute()
    except (APIError, httpx.HTTPError) as exc:
        raise StoreUnavailableError(str(exc)) from exc
