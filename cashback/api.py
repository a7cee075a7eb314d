import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from .config import Settings, get_settings
from .errors import CashbackError
from .models import (
    Coupon,
    CouponView,
    CreatePurchaseRequest,
    Purchase,
    RedemptionResult,
    RegisterUserRequest,
    StatsResponse,
    User,
    UserPublic,
    VerificationResult,
    VerifyPurchaseRequest,
)
from .observability import setup_logging
from .service import CashbackService, sort_for_review

logger = logging.getLogger(__name__)

security = HTTPBasic()


def get_service(request: Request) -> CashbackService:
    return request.app.state.service


def get_current_user(
    credentials: HTTPBasicCredentials = Depends(security),
    service: CashbackService = Depends(get_service),
) -> User:
    user = service.authenticate(credentials.username, credentials.password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
            headers={"WWW-Authenticate": "Basic"},
        )
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(CashbackError)
    async def cashback_error_handler(request: Request, exc: CashbackError):
        logger.info(exc.message, extra={"error_code": exc.code, "path": request.url.path})
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "Invalid request data",
                    "category": "validation",
                    "details": [
                        {
                            "field": ".".join(str(loc) for loc in e["loc"]),
                            "message": e["msg"],
                            "type": e["type"],
                        }
                        for e in exc.errors()
                    ],
                }
            },
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                    "category": "internal",
                }
            },
        )


def create_app(
    service: Optional[CashbackService] = None, settings: Optional[Settings] = None
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level, settings.log_format)
        yield

    app = FastAPI(
        title="Cashback Coupon API",
        description="Purchase submission, admin verification and cashback coupon redemption",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service or CashbackService(settings=settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "cashback-coupons"}

    @app.post("/register", response_model=UserPublic, status_code=status.HTTP_201_CREATED, tags=["Users"])
    def register(request: RegisterUserRequest, service: CashbackService = Depends(get_service)):
        return service.register_user(
            username=request.username,
            password=request.password,
            name=request.name,
            address=request.address,
            phone=request.phone,
        )

    @app.get("/me", response_model=UserPublic, tags=["Users"])
    def me(user: User = Depends(get_current_user)):
        return user

    @app.get("/users", response_model=list[UserPublic], tags=["Admin"])
    def list_users(
        _: User = Depends(require_admin), service: CashbackService = Depends(get_service)
    ):
        return service.list_users()

    @app.get("/stats", response_model=StatsResponse, tags=["Admin"])
    def get_stats(
        _: User = Depends(require_admin), service: CashbackService = Depends(get_service)
    ):
        return service.stats()

    @app.post("/purchases", response_model=Purchase, status_code=status.HTTP_201_CREATED, tags=["Purchases"])
    def create_purchase(
        request: CreatePurchaseRequest,
        user: User = Depends(get_current_user),
        service: CashbackService = Depends(get_service),
    ):
        return service.create_purchase(
            user.id, request.bill_number, request.bill_amount, request.purchase_date
        )

    @app.get("/purchases", response_model=list[Purchase], tags=["Purchases"])
    def list_my_purchases(
        user: User = Depends(get_current_user), service: CashbackService = Depends(get_service)
    ):
        purchases = service.list_purchases(user.id)
        return sorted(purchases, key=lambda p: (p.created_at, p.id), reverse=True)

    @app.get("/admin/purchases", response_model=list[Purchase], tags=["Admin"])
    def list_all_purchases(
        _: User = Depends(require_admin), service: CashbackService = Depends(get_service)
    ):
        return sort_for_review(service.list_purchases())

    @app.post("/purchases/{purchase_id}/verify", response_model=VerificationResult, tags=["Admin"])
    def verify_purchase(
        purchase_id: int,
        request: Optional[VerifyPurchaseRequest] = None,
        _: User = Depends(require_admin),
        service: CashbackService = Depends(get_service),
    ):
        amount = request.cashback_amount if request else None
        return service.verify_purchase(purchase_id, amount)

    @app.post("/purchases/{purchase_id}/redeem", response_model=RedemptionResult, tags=["Admin"])
    def redeem_coupon(
        purchase_id: int,
        _: User = Depends(require_admin),
        service: CashbackService = Depends(get_service),
    ):
        return service.redeem_coupon(purchase_id)

    @app.get("/coupons", response_model=list[Coupon], tags=["Coupons"])
    def list_my_coupons(
        user: User = Depends(get_current_user), service: CashbackService = Depends(get_service)
    ):
        return service.list_coupons_for_user(user.id)

    @app.get("/admin/coupons", response_model=list[CouponView], tags=["Admin"])
    def coupon_report(
        _: User = Depends(require_admin), service: CashbackService = Depends(get_service)
    ):
        return service.coupon_report()

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
