from fastapi import APIRouter
from logtiers.services import metrics as metrics_service
from logtiers.schemas.api_contract import MetricsResponse

router = APIRouter(prefix="/metrics", tags=["metrics"])


@router.get("/", response_model=MetricsResponse)
def get_metrics():
    snapshot = metrics_service.get_metrics()
    return {field: snapshot[field] for field in MetricsResponse.model_fields}
