import logging
import time
import uuid
from fastapi import Request

logger = logging.getLogger("clickhouse_admin")
access_logger = logging.getLogger("clickhouse_admin.access")


def setup_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def client_ip(request: Request) -> str | None:
    """Best-effort client address, honouring a proxy's X-Forwarded-For."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def correlation_id_middleware(request: Request, call_next):
    cid = request.headers.get("x-correlation-id") or str(uuid.uuid4())
    request.state.correlation_id = cid
    start = time.perf_counter()
    response = await call_next(request)
    response.headers["x-correlation-id"] = cid
    access_logger.info(
        "%s %s -> %s in %.1fms cid=%s",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - start) * 1000,
        cid,
    )
    return response
