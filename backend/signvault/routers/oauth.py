"""
OAuth router: connect a DocuSign, SignNow or PandaDoc account.

Endpoints:
  GET /{provider}/start      — consent URL + state (auth: X-Api-Key)
  GET /{provider}/callback   — provider redirect target; always answers with
                               a 302 to COMPLETION_REDIRECT_URL

Callback outcomes are reported to the browser through query parameters:
  ?success=true&account=<email>&provider=<provider>
  ?error=<kind>&message=<text>
where kind is one of invalid_request, invalid_state, token_error,
database_error, server_error.
"""

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse

from signvault.dependencies import VaultServices, get_services, http_error, require_api_key
from signvault.errors import InternalError, VaultError
from signvault.models.connection import AuthorizationStart
from signvault.services.providers import parse_provider

logger = logging.getLogger(__name__)

router = APIRouter()


def _completion_redirect(base_url: str, params: dict) -> RedirectResponse:
    separator = "&" if "?" in base_url else "?"
    return RedirectResponse(url=f"{base_url}{separator}{urlencode(params)}", status_code=302)


@router.get("/{provider}/start", response_model=AuthorizationStart)
async def start_authorization(
    provider: str,
    user_id: str = Query(...),
    services: VaultServices = Depends(get_services),
    _: None = Depends(require_api_key),
) -> AuthorizationStart:
    """Create a single-use state and return the provider consent URL."""
    try:
        return services.oauth.begin_authorization(parse_provider(provider), user_id)
    except VaultError as e:
        logger.error(f"Could not start {provider} authorization: {e}")
        raise http_error(e)


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    services: VaultServices = Depends(get_services),
) -> RedirectResponse:
    """
    Redeem the state, exchange the code and persist the connection.

    Never raises: every failure becomes an ``error`` redirect so the user
    lands back in the product with something to show.
    """
    base_url = services.settings.completion_redirect_url
    try:
        resolved = parse_provider(provider)
        if error:
            services.oauth.abandon_authorization(state)
            logger.warning(f"{provider} authorization denied: {error}")
            return _completion_redirect(
                base_url,
                {"error": "invalid_request", "message": error_description or error},
            )

        connection = await services.oauth.complete_authorization(resolved, code, state)
    except VaultError as e:
        logger.error(f"{provider} OAuth callback failed: {e.kind}: {e}")
        return _completion_redirect(base_url, {"error": e.kind, "message": e.message})
    except Exception:
        logger.exception(f"{provider} OAuth callback failed unexpectedly")
        failure = InternalError("Unexpected error completing authorization")
        return _completion_redirect(base_url, {"error": failure.kind, "message": failure.message})

    account = connection.email or connection.display_name or connection.external_account_id
    return _completion_redirect(
        base_url,
        {"success": "true", "account": account, "provider": resolved.value},
    )
