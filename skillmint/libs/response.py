from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from skillmint.libs.formats.datetime import isoformat
from skillmint.libs.formats.datetime import now as get_now


def envelope(success: bool, message: str, data: Any = None, errors: Any = None) -> dict:
    body: dict[str, Any] = {
        "success": success,
        "message": message,
        "timestamp": isoformat(get_now()),
    }
    if data is not None:
        body["data"] = jsonable_encoder(data)
    if errors is not None:
        body["errors"] = jsonable_encoder(errors)
    return body


def ok(data: Any = None, message: str = "OK") -> dict:
    return envelope(True, message, data=data)


def error_response(status_code: int, message: str, errors: Any = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content=envelope(False, message, errors=errors)
    )
