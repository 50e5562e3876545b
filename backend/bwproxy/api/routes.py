"""Proxy routes."""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, Response

from bwproxy.api.responses import ProxyResponse
from bwproxy.proxy.errors import InvalidURLError
from bwproxy.proxy.params import client_hints, resolve_request
from bwproxy.proxy.service import ProxyService, get_proxy_service
from bwproxy.proxy.sink import ResponseSink

logger = logging.getLogger("bwproxy.api")
router = APIRouter(tags=["proxy"])

HEALTH_TEXT = "bandwidth-hero-proxy"


@router.get("/favicon.ico")
def favicon():
    return Response(status_code=204)


@router.get("/")
async def proxy(request: Request, service: ProxyService = Depends(get_proxy_service)):
    """Fetch ?url=, compress it when worthwhile (jpeg, bw and l tune the output)."""
    try:
        params = resolve_request(request.query_params, request.headers, service.settings)
    except InvalidURLError as e:
        logger.info("Rejected request: %s", e)
        return PlainTextResponse("Invalid URL", status_code=400)
    if params is None:
        return PlainTextResponse(HEALTH_TEXT)

    client = client_hints(request.headers, request.client.host if request.client else None)

    async def handle(sink: ResponseSink):
        return await service.handle(params, client, sink)

    return ProxyResponse(handle, label=params.origin_url)
