from typing import Annotated, Optional

from fastapi import APIRouter, Depends, File, Header, HTTPException, Request, UploadFile, status

from taxis.core.exceptions import AppError, ValidationError
from taxis.dependencies import get_upload_service
from taxis.schemas.jobs import RequiredFieldsResponse, UploadAcceptedResponse
from taxis.services.upload_service import REQUIRED_FIELDS, UploadService
from taxis.utils.logging import get_logger
from taxis.utils.responses import create_api_response, create_error_detail

LOGGER = get_logger(__name__)

router = APIRouter()


@router.get(
    "/required-fields",
    summary="List required upload columns",
    operation_id="get_required_upload_fields",
)
async def required_fields(request: Request):
    """Columns every uploaded spreadsheet must contain."""
    return create_api_response(
        data=RequiredFieldsResponse(required_fields=list(REQUIRED_FIELDS)),
        message="Required fields retrieved",
        request=request
    )


@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a concept-pair spreadsheet",
    operation_id="create_upload",
)
async def create_upload(
    request: Request,
    upload_service: Annotated[UploadService, Depends(get_upload_service)],
    file: UploadFile = File(...),
    user_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    """Validate the header row, store the file and queue a job for it."""
    content = await file.read()

    try:
        registered = await upload_service.register_upload(
            filename=file.filename or "upload.csv",
            content=content,
            content_type=file.content_type,
            user_id=user_id,
        )
    except ValidationError as e:
        error_detail = create_error_detail(
            title="Invalid Upload",
            status=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
            request=request,
            errors=e.details,
        )
        raise HTTPException(status_code=400, detail=error_detail.model_dump(mode="json"))
    except AppError as e:
        LOGGER.error(f"Upload registration failed: {e}", exc_info=True)
        error_detail = create_error_detail(
            title="Upload Failed",
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
            request=request
        )
        raise HTTPException(status_code=500, detail=error_detail.model_dump(mode="json"))

    return create_api_response(
        data=UploadAcceptedResponse(
            job_id=registered.job_id,
            upload_id=registered.upload_id,
            input_blob_key=registered.input_blob_key,
            output_blob_key=registered.output_blob_key,
        ),
        message="Upload accepted",
        request=request
    )
