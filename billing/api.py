import logging
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .config import Settings
from .errors import (
    BillingServiceError,
    InvalidSignature,
    InvalidStateTransition,
    MalformedPayload,
    OrderNotFound,
    ProfileNotFound,
    StoreWriteFailure,
    UnknownPackage,
)
from .models import (
    CreateOrderRequest,
    CreditOrder,
    CreditPackage,
    OrderResponse,
    OrderStatus,
    ReconciliationAction,
    RejectOrderRequest,
    UserProfile,
    ValidateOrderRequest,
)
from .service import ReconciliationService
from .storage import InMemoryStorage
from .verifier import SIGNATURE_HEADER, WebhookVerifier

log = logging.getLogger("billing.webhook")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": f"authorization, x-client-info, apikey, content-type, {SIGNATURE_HEADER}",
}


def build_storage(settings: Settings):
    if settings.storage_backend == "supabase":
        from .supabase_store import SupabaseStorage, get_supabase
        return SupabaseStorage(get_supabase(settings.supabase_url, settings.supabase_service_key))
    return InMemoryStorage()


def _reply(body: dict, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(content=body, status_code=status_code, headers=CORS_HEADERS)


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[ReconciliationService] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    if service is None:
        service = ReconciliationService(build_storage(settings), fallback_window=settings.fallback_window)
    verifier = WebhookVerifier(settings.webhook_secret, enforce_signature=settings.enforce_signature)

    app = FastAPI(
        title="Capsule Credits API",
        description="Credit orders and FedaPay payment reconciliation",
        version="1.0.0",
    )
    app.state.service = service
    app.state.verifier = verifier

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "capsule-credits"}

    @app.options("/webhooks/fedapay", tags=["Webhooks"])
    def fedapay_webhook_preflight():
        return Response(status_code=status.HTTP_200_OK, headers=CORS_HEADERS)

    @app.post("/webhooks/fedapay", tags=["Webhooks"])
    async def fedapay_webhook(request: Request) -> JSONResponse:
        raw_body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER, "")
        log.info("FedaPay webhook received: %s", {"body_length": len(raw_body), "signature_present": bool(signature)})

        try:
            event = verifier.verify(raw_body, signature)
        except MalformedPayload as e:
            log.warning("Malformed webhook payload: %s", e)
            return _reply({"error": "Malformed payload"}, status.HTTP_400_BAD_REQUEST)
        except InvalidSignature:
            return _reply({"error": "Invalid signature"}, status.HTTP_401_UNAUTHORIZED)

        try:
            result = await run_in_threadpool(service.handle_event, event)
        except OrderNotFound as e:
            return _reply({"error": "Order not found", "details": e.details}, status.HTTP_404_NOT_FOUND)
        except ProfileNotFound:
            return _reply({"error": "Profile not found"}, status.HTTP_404_NOT_FOUND)
        except StoreWriteFailure as e:
            return _reply({"error": str(e)}, status.HTTP_500_INTERNAL_SERVER_ERROR)
        except Exception as e:
            log.exception("Webhook error: %s", event.log_context())
            return _reply({"error": str(e)}, status.HTTP_500_INTERNAL_SERVER_ERROR)

        order_id = str(result.order.id) if result.order else None
        if result.action == ReconciliationAction.IGNORED:
            return _reply({"received": True, "action": result.action.value})
        if result.action == ReconciliationAction.ORDER_CANCELED:
            return _reply({
                "received": True,
                "action": result.action.value,
                "matched": result.applied,
                "order_id": order_id,
            })
        if result.action == ReconciliationAction.ALREADY_PROCESSED:
            message = "Order already processed"
        else:
            message = f"{result.credits_added} credits added to user"
        return _reply({
            "success": True,
            "action": result.action.value,
            "message": message,
            "order_id": order_id,
            "transaction_id": result.transaction_id,
        })

    @app.get("/packages", response_model=list[CreditPackage], tags=["Orders"])
    def list_packages() -> list[CreditPackage]:
        return service.list_packages()

    @app.post("/orders", response_model=CreditOrder, status_code=status.HTTP_201_CREATED, tags=["Orders"])
    def create_order(request: CreateOrderRequest) -> CreditOrder:
        try:
            return service.create_order(request)
        except UnknownPackage as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except StoreWriteFailure as e:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    @app.get("/orders", response_model=list[CreditOrder], tags=["Orders"])
    def list_orders(order_status: Optional[OrderStatus] = Query(default=None, alias="status")) -> list[CreditOrder]:
        return service.list_orders(order_status)

    @app.get("/orders/{order_id}", response_model=CreditOrder, tags=["Orders"])
    def get_order(order_id: UUID) -> CreditOrder:
        try:
            return service.get_order(order_id)
        except OrderNotFound:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Order {order_id} not found")

    @app.post("/orders/{order_id}/validate", response_model=OrderResponse, tags=["Admin"])
    def validate_order(order_id: UUID, request: ValidateOrderRequest) -> OrderResponse:
        try:
            return service.validate_order(order_id, request)
        except (OrderNotFound, ProfileNotFound) as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except InvalidStateTransition as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        except StoreWriteFailure as e:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    @app.post("/orders/{order_id}/reject", response_model=OrderResponse, tags=["Admin"])
    def reject_order(order_id: UUID, request: RejectOrderRequest) -> OrderResponse:
        try:
            return service.reject_order(order_id, request)
        except OrderNotFound as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except InvalidStateTransition as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        except BillingServiceError as e:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    @app.get("/users/{user_id}/balance", response_model=UserProfile, tags=["Users"])
    def get_user_balance(user_id: UUID) -> UserProfile:
        try:
            return service.get_balance(user_id)
        except ProfileNotFound as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
