"""File upload API: presigned URLs under the tenant's storage namespace."""

import logging
import math

from fastapi import APIRouter, Depends

from chatdesk.auth.context import RequestContext
from chatdesk.common.exceptions import NotFoundError, PayloadTooLargeError, TenantUnidentifiedError
from chatdesk.common.responses import ok
from chatdesk.files.models import FileModel
from chatdesk.files.schemas import FileResponse, PresignRequest
from chatdesk.files.storage import object_key
from chatdesk.policy.gate import require
from chatdesk.scoping.scoped import store_for

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/files", tags=["files"])

MB = 1024 * 1024


def _get_db():
    from chatdesk.deps import get_db
    return get_db()


def _get_storage():
    from chatdesk.deps import get_storage
    return get_storage()


def storage_units(size_bytes: int) -> int:
    """Whole megabytes charged against ``maxStorageMB`` (at least one)."""
    return max(1, math.ceil(size_bytes / MB))


@router.post("/presign")
async def presign_upload(
    body: PresignRequest,
    ctx: RequestContext = Depends(require(module="chat")),
):
    from chatdesk.deps import get_accountant

    accountant = get_accountant()
    async with _get_db().get_session() as session:
        store = store_for(ctx, session)
        tenant_id = store.tenant_id
        if tenant_id is None:
            raise TenantUnidentifiedError()
        ceiling = await accountant.limit_of(session, tenant_id, "maxFileSizeMB")
    if ceiling is not None and not ctx.is_master and body.size > ceiling * MB:
        raise PayloadTooLargeError(ceiling, body.size / MB)

    key = object_key(tenant_id, body.filename)
    async with _get_db().get_session() as session:
        store = store_for(ctx, session)
        await accountant.consume(
            session, tenant_id, "maxStorageMB", storage_units(body.size), bypass=ctx.is_master,
        )
        record = await store.insert(FileModel, {
            "key": key,
            "filename": body.filename,
            "content_type": body.content_type,
            "size_bytes": body.size,
            "conversation_id": body.conversation_id,
            "uploaded_by": ctx.user_id,
        })
        data = FileResponse.model_validate(record)

    upload = _get_storage().presign_put(tenant_id, key, body.size, body.content_type)
    logger.info("Upload presigned", extra={**ctx.log_extra(), "key": key, "size": body.size})
    return ok({"file": data, "upload": upload}, status_code=201)


@router.get("/{file_id}/url")
async def download_url(
    file_id: str,
    ctx: RequestContext = Depends(require(module="chat")),
):
    async with _get_db().get_session() as session:
        record = await store_for(ctx, session).get(FileModel, file_id)
        if record is None:
            raise NotFoundError("File not found")
        tenant_id, key = record.tenant_id, record.key
    return ok(_get_storage().presign_get(tenant_id, key))
