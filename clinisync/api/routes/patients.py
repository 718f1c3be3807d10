"""Patient query endpoints."""

import logging

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse

from clinisync.api.dependencies import QueryServiceDep
from clinisync.api.models import ErrorResponse, PatientLookupResponse
from clinisync.domain.models import PatientQueryResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/patients", tags=["patients"])

_CLIENT_ERRORS = {"MalformedId"}


@router.get(
    "/{patient_key}",
    response_model=PatientQueryResult,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def query_patient(patient_key: str, query_service: QueryServiceDep):
    """Full snapshot for one patient.

    An unknown patient returns 200 with ``demographics: null``.
    """
    result = query_service.query_patient(patient_key)
    if result.is_failure():
        status_code = 400 if result.error_type in _CLIENT_ERRORS else 500
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(error=result.error or "", error_type=result.error_type).model_dump(),
        )
    return result.value


@router.get("", response_model=PatientLookupResponse)
def find_patient(
    query_service: QueryServiceDep,
    national_id: str = Query(..., min_length=1, description="National ID, case-insensitive"),
) -> PatientLookupResponse:
    match = query_service.find_patient_by_national_id(national_id)
    if match is None:
        raise HTTPException(status_code=404, detail="Patient not found")
    return PatientLookupResponse(**match)
