import json

from fastapi import Request
from fastapi.responses import JSONResponse

from whisperpay.src.errors import (
    ConfigurationError,
    FeeQuoteUnavailable,
    SubmissionError,
    UnsupportedChainError,
    ValidationError,
    WhisperPayError,
)


# Checked in order, so subclasses must precede their bases
ERROR_STATUS = (
    (ValidationError, 400),
    (ConfigurationError, 500),
    (UnsupportedChainError, 500),
    (FeeQuoteUnavailable, 503),
    (SubmissionError, 502),
)


class APIHelper:

    @staticmethod
    async def handlePayloadJson(request: Request):
        content_type = request.headers.get("content-type", "")

        if "application/json" in content_type:
            payload_json = await request.json()
            return payload_json
        elif (
            "application/x-www-form-urlencoded" in content_type
            or "multipart/form-data" in content_type
        ):
            form = await request.form()
            # form['payload'] is expected to be a JSON string
            payload_field = form.get("payload")
            if not payload_field:
                raise ValidationError("Missing 'payload' form field")
            payload_json = json.loads(payload_field)
            return payload_json
        else:
            # try json fallback
            try:
                payload_json = await request.json()
                return payload_json
            except Exception:
                return {}

    @staticmethod
    def status_for(error: WhisperPayError) -> int:
        for error_type, status_code in ERROR_STATUS:
            if isinstance(error, error_type):
                return status_code
        return 500

    @staticmethod
    def error_response(error: Exception) -> JSONResponse:
        if isinstance(error, WhisperPayError):
            status_code = APIHelper.status_for(error)
            message = str(error)
        else:
            status_code = 500
            message = str(error) or "Internal server error"
        return JSONResponse(
            content={"status_code": 0, "message": message},
            status_code=status_code,
        )

    @staticmethod
    def success_response(data: dict) -> JSONResponse:
        return JSONResponse(content={"status_code": 1, **data})
