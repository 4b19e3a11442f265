"""
Operator API for provider connections (auth: X-Api-Key).

  GET    /?user_id=               — a user's connections (tokens never included)
  DELETE /{connection_id}?user_id=
"""

from typing import List

from fastapi import APIRouter, Depends, Query

from signvault.dependencies import VaultServices, get_services, http_error, require_api_key
from signvault.errors import VaultError
from signvault.models.connection import ConnectionPublic

router = APIRouter(dependencies=[Depends(require_api_key)])


@router.get("/", response_model=List[ConnectionPublic])
async def list_connections(
    user_id: str = Query(...),
    services: VaultServices = Depends(get_services),
) -> List[ConnectionPublic]:
    try:
        return services.oauth.list_connections(user_id)
    except VaultError as e:
        raise http_error(e)


@router.delete("/{connection_id}")
async def delete_connection(
    connection_id: str,
    user_id: str = Query(...),
    services: VaultServices = Depends(get_services),
) -> dict:
    try:
        services.oauth.delete_connection(connection_id, user_id)
    except VaultError as e:
        raise http_error(e)
    return {"message": "Connection deleted successfully"}
