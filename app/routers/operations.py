from fastapi import APIRouter, Depends, File, Request, UploadFile
from fastapi.responses import Response

from app.core.exceptions import BadRequestError, NotFoundError
from app.deps import enforce_rate_limit, get_gateway
from app.services.catalog import OperationSpec
from app.services.charging import ExternalResult
from app.services.gateway import Gateway
from app.store.types import AccountRecord, utcnow

router = APIRouter()

WELCOME_MESSAGE = "Welcome to Swaroop AI API!"


@router.get("")
async def list_operations(gateway: Gateway = Depends(get_gateway)):
    """Catalog of metered operations and their credit cost."""
    return {"operations": [op.to_dict() for op in gateway.catalog.all()]}


@router.get("/{operation}")
async def get_operation(operation: str, gateway: Gateway = Depends(get_gateway)):
    spec = gateway.catalog.get(operation)
    if not spec:
        raise NotFoundError("API not found")
    return spec.to_dict()


async def _read_upload(image: UploadFile | None, max_bytes: int) -> bytes:
    if image is None or not image.filename:
        raise BadRequestError("No image file provided")
    if image.content_type and not image.content_type.startswith("image/"):
        raise BadRequestError("Only image files are allowed", details={"content_type": image.content_type})
    payload = await image.read(max_bytes + 1)
    if len(payload) > max_bytes:
        raise BadRequestError("Image is too large", details={"max_bytes": max_bytes})
    if not payload:
        raise BadRequestError("Image file is empty")
    return payload


@router.post("/{operation}")
async def invoke_operation(
    operation: str,
    request: Request,
    account: AccountRecord = Depends(enforce_rate_limit),
    gateway: Gateway = Depends(get_gateway),
    image: UploadFile | None = File(None),
):
    """Run a metered operation and charge its cost on success."""
    spec = gateway.catalog.get(operation)
    if not spec:
        raise NotFoundError("API not found")

    request_meta = {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }
    if spec.requires_upload:
        payload = await _read_upload(image, gateway.settings.max_upload_bytes)
        request_meta["filename"] = image.filename
        perform = _document_call(gateway, spec, payload, image.filename, image.content_type)
    else:
        perform = _welcome_call(account)

    charge = await gateway.coordinator.admit_and_charge(account.id, operation, perform, request_meta=request_meta)
    result = charge.result
    if result.is_binary:
        return Response(
            content=result.content,
            media_type=result.media_type,
            headers={"X-Credits-Remaining": str(charge.new_balance)},
        )
    return {"success": True, "data": result.data, "credits_remaining": charge.new_balance}


def _welcome_call(account: AccountRecord):
    async def perform() -> ExternalResult:
        return ExternalResult(
            data={
                "message": WELCOME_MESSAGE,
                "timestamp": utcnow().isoformat(),
                "user": {"name": account.name, "email": account.email},
            }
        )

    return perform


def _document_call(gateway: Gateway, spec: OperationSpec, payload: bytes, filename: str, content_type: str | None):
    async def perform() -> ExternalResult:
        return await gateway.documents.process(
            spec.upstream_path,
            payload,
            filename=filename,
            content_type=content_type or "application/octet-stream",
            binary=spec.binary_response,
        )

    return perform
