from fastapi import APIRouter

from clinic_claims.api.routes import health, patient_claiming

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(
    patient_claiming.router,
    prefix="/patient-claiming",
    tags=["patient-claiming"],
)
