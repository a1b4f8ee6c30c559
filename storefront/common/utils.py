
from datetime import datetime,timezone
from typing import Any, Dict, Optional, Union

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

def now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(ts: datetime) -> datetime:
    # sqlite hands back naive datetimes for timezone aware columns
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def build_success(data: Dict[str, Any],
                  trace_id: Optional[str] = None,request_id: Optional[str] = None,) -> Dict[str, Any]:
    return {
        "status": "ok",
        "data": data,
        "error": None,
        "trace_id": trace_id,
        "request_id": request_id,
    }

def build_error(code: Union[str, int] = "UNKNOWN_ERROR",
                details: Optional[Any] = None,
                request_id: Optional[str] = None,
                trace_id: Optional[str] = None) -> Dict[str, Any]:
   
    return {
        "status": "error",
        "data": None,
        "error": {"code": code, "details": details},
        "trace_id": trace_id,
        "request_id": request_id,
    }

def json_ok(content: Dict[str, Any], status_code: int = 200,headers = None) -> JSONResponse:
    return JSONResponse(jsonable_encoder(content), status_code=status_code,headers=headers)

def json_error(content: Dict[str, Any], status_code: int = 500, headers=None) -> JSONResponse:
    return JSONResponse(jsonable_encoder(content), status_code=status_code, headers=headers)

def success_response(data: Dict[str, Any], status_code: int = 200,headers: Optional[Dict[str, Any]] = None , 
                     request_id: Optional[str] = None) -> JSONResponse:
    content = build_success(data, request_id=request_id)
    return json_ok(content, status_code=status_code,headers=headers)
