"""
FastAPI REST API Module

Exposes transfer and balance endpoints under /api/v1 and maps ledger error
kinds to HTTP responses.
"""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
import uvicorn

from .errors import ErrorKind, LedgerError
from .logging_config import get_logger
from .models import TransferRequest
from .service import BankService


logger = get_logger("money_transfer.api")


# Pydantic models for API requests/responses
class TransferRequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_id: str = Field(..., alias="from", description="Source account ID")
    to_id: str = Field(..., alias="to", description="Destination account ID")
    amount: Decimal = Field(..., description="Amount to transfer, at most 2 decimal places")

    def to_request(self) -> TransferRequest:
        return TransferRequest(from_id=self.from_id, to_id=self.to_id, amount=self.amount)


class TransferResponseModel(BaseModel):
    success: bool
    message: Optional[str] = None


class BalanceResponseModel(BaseModel):
    balance: str = Field(..., description="Decimal balance as string")


STATUS_BY_KIND = {
    ErrorKind.ACCOUNT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INSUFFICIENT_FUNDS: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_AMOUNT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.SAME_ACCOUNT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.SERIALIZATION_CONFLICT: status.HTTP_409_CONFLICT,
}


def internal_error_response() -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                        content={"error": "internal server error"})


def error_response(error: LedgerError) -> JSONResponse:
    """Map a ledger error to an HTTP error response"""
    status_code = STATUS_BY_KIND.get(error.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code == status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error(f"Internal error: {error!r}")
        return internal_error_response()
    return JSONResponse(status_code=status_code, content={"error": error.message})


# Dependency to get the bank service
def get_bank_service(request: Request) -> BankService:
    return request.app.state.bank_service


router = APIRouter(prefix="/api/v1")


@router.post("/transfer", response_model=TransferResponseModel)
def transfer(
    body: TransferRequestModel,
    service: BankService = Depends(get_bank_service)
):
    """Execute money transfer between accounts"""
    try:
        service.transfer(body.to_request())
    except LedgerError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Unexpected transfer failure: {e}")
        return internal_error_response()
    return TransferResponseModel(success=True)


@router.get("/balance/{account}", response_model=BalanceResponseModel)
def get_balance(
    account: str,
    service: BankService = Depends(get_bank_service)
):
    """Get account balance"""
    try:
        balance = service.get_balance(account)
    except LedgerError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Unexpected balance lookup failure: {e}")
        return internal_error_response()
    return BalanceResponseModel(balance=str(balance))


def create_app(bank_service: BankService) -> FastAPI:
    """Create the FastAPI application around a bank service"""
    app = FastAPI(
        title="Money Transfer API",
        description="API for money transfers between accounts",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.bank_service = bank_service

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        """Malformed payloads are reported as 400 with the first validation error"""
        errors = exc.errors()
        message = errors[0]["msg"] if errors else "invalid request"
        if errors and errors[0].get("loc"):
            message = f"{'.'.join(str(part) for part in errors[0]['loc'])}: {message}"
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc!r}")
        return internal_error_response()

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {"status": "ok"}

    app.include_router(router)
    return app


def run_server(app: FastAPI, host: str = "0.0.0.0", port: int = 8080, log_level: str = "info"):
    """Run the FastAPI server"""
    uvicorn.run(app, host=host, port=port, log_level=log_level.lower())
