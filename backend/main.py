from fastapi import FastAPI, UploadFile, File, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from core.config import cors_origins
from core.state import add_data_source, make_data_source
from core.storage import get_session_hashes
from core.utils import df_to_records_safe
from server.api import router as dashboard_router
from server.canvas import get_dashboard
import pandas as pd
import io
from dotenv import load_dotenv
import logging
import hashlib
import json
from datetime import datetime
from collections import OrderedDict

logger = logging.getLogger("uvicorn.error")
load_dotenv()
app = FastAPI(title="Dashboard Builder", description="Pages of charts over uploaded datasets")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount the dashboard API router
app.include_router(dashboard_router)


PREVIEW_CACHE_MAX = 512
_preview_cache: "OrderedDict[tuple, dict]" = OrderedDict()


def _preview_cache_get(key: tuple):
    cached = _preview_cache.get(key)
    if cached is not None:
        _preview_cache.move_to_end(key)
    return cached


def _preview_cache_set(key: tuple, value: dict) -> None:
    _preview_cache[key] = value
    _preview_cache.move_to_end(key)
    if len(_preview_cache) > PREVIEW_CACHE_MAX:
        _preview_cache.popitem(last=False)


def require_session_id(request: Request) -> str:
    sid = request.headers.get("X-Session-Id")
    if not sid:
        raise HTTPException(status_code=400, detail="Missing X-Session-Id header.")
    return sid


def _sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _log_response(ctx: str, payload) -> None:
    """Pretty-print JSON-able payloads; fall back to str()."""
    try:
        logger.info("%s response: %s", ctx, json.dumps(payload, indent=2, default=str))
    except Exception:
        logger.info("%s response (non-serializable): %s", ctx, str(payload))


def read_csv_bytes(content: bytes) -> pd.DataFrame:
    """Parse CSV with pyarrow when available; fall back to the C engine."""
    try:
        df = pd.read_csv(io.BytesIO(content), engine="pyarrow", dtype_backend="pyarrow")
    except Exception:
        try:
            df = pd.read_csv(io.BytesIO(content))
        except Exception as e:
            logger.exception("Failed to read CSV")
            raise HTTPException(status_code=400, detail=f"Failed to read CSV: {e}")

    # Rows carry dates as ISO strings, the way they arrive from any other source
    for c in df.columns:
        s = df[c]
        if pd.api.types.is_datetime64_any_dtype(s.dtype) or _is_arrow_temporal(s):
            ts = pd.to_datetime(s.astype(object), errors="coerce")
            fmt = "%Y-%m-%d" if (ts.dropna() == ts.dropna().dt.normalize()).all() else "%Y-%m-%dT%H:%M:%S"
            df[c] = ts.dt.strftime(fmt)

    # --- normalize to pandas nullable dtypes so records hold plain Python scalars ---
    return df.convert_dtypes(
        convert_string=True,
        convert_integer=True,
        convert_boolean=True,
        convert_floating=True,
        dtype_backend="numpy_nullable",
    )


def _is_arrow_temporal(s: pd.Series) -> bool:
    pa_type = getattr(s.dtype, "pyarrow_dtype", None)
    if pa_type is None:
        return False
    import pyarrow as pa
    return pa.types.is_date(pa_type) or pa.types.is_timestamp(pa_type)


@app.post("/upload")
async def upload(request: Request, file: UploadFile = File(...)):
    sid = require_session_id(request)
    dash = get_dashboard(sid)
    content = await file.read()

    file_size = len(content)
    filename = file.filename or "table.csv"
    ext = (filename.rsplit(".", 1)[1].lower() if "." in filename else "").strip()

    # duplicate detection (by content hash)
    file_hash = _sha256_bytes(content)
    sess_hashes = get_session_hashes(sid)
    if file_hash in sess_hashes:
        existing_name = sess_hashes[file_hash]
        dup_resp = {
            "ok": False,
            "duplicate": True,
            "table": existing_name,
            "detail": "Duplicate upload: this file was already uploaded for this session.",
        }
        _log_response("UPLOAD (duplicate)", dup_resp)
        return JSONResponse(status_code=409, content=dup_resp)

    df = read_csv_bytes(content)

    # --- unique name (source names compare case-insensitively) ---
    taken = {ds.name.lower() for ds in dash.store.state.project.data_sources}
    base = filename.rsplit(".", 1)[0] if filename else "table"
    name = base
    i = 1
    while name.lower() in taken:
        i += 1
        name = f"{base}_{i}"

    rows = df_to_records_safe(df)
    source = make_data_source(name, rows)
    dash.store.dispatch(add_data_source, source)
    dash.ensure_page()
    sess_hashes[file_hash] = name

    # --- metadata ---
    created_at = datetime.utcnow().isoformat() + "Z"
    dash.meta[name] = {
        "file_name": filename,
        "file_ext": ext,
        "file_size": file_size,
        "created_at": created_at,
        "n_rows": len(rows),
        "n_cols": len(df.columns),
        "columns": [str(c) for c in df.columns],
        "column_types": {c.name: c.type.value for c in source.schema_.columns},
    }

    resp = {
        "ok": True,
        "table": name,
        "sourceId": source.id,
        "rows": len(rows),
        "columns": [str(c) for c in df.columns],
        "schema": source.schema_.model_dump(by_alias=True, mode="json"),
        "meta": dash.meta[name],
    }
    _log_response("UPLOAD", resp)
    return resp


@app.get("/tables")
async def tables(request: Request):
    sid = require_session_id(request)
    dash = get_dashboard(sid)

    tables_info = []
    for source in dash.store.state.project.data_sources:
        # computed on the fly for sources that did not come from an upload
        meta = dash.meta.get(source.name) or {
            "file_name": source.name,
            "file_ext": "",
            "file_size": None,
            "created_at": None,
            "n_rows": len(source.data),
            "n_cols": len(source.schema_.columns),
            "columns": [c.name for c in source.schema_.columns],
            "column_types": {c.name: c.type.value for c in source.schema_.columns},
        }
        tables_info.append(
            {
                "name": source.name,
                "sourceId": source.id,
                "active": source.id == dash.store.state.primary_source().id,
                **meta,
            }
        )

    resp = {"tables": tables_info}
    _log_response("TABLES", resp)
    return resp


@app.get("/table/{table_name}/preview")
async def table_preview(request: Request, table_name: str, offset: int = 0, limit: int = 50):
    """Get a preview of the table data with cursor pagination."""
    sid = require_session_id(request)
    dash = get_dashboard(sid)

    source = dash.store.state.data_source(table_name)
    if source is None:
        raise HTTPException(status_code=404, detail=f"Table '{table_name}' not found")

    # Cap limit at 100 rows per request
    limit = min(limit, 100)
    offset = max(offset, 0)

    # keyed on content so a live replacement never serves stale rows
    cache_key = (sid, source.name, source.data_hash, offset, limit)
    cached = _preview_cache_get(cache_key)
    if cached is not None:
        return cached

    total_rows = len(source.data)
    start = offset
    end = min(offset + limit, total_rows)
    page_rows = source.data[start:end]

    has_more = end < total_rows
    next_offset = end if has_more else None

    resp = {
        "table": source.name,
        "columns": [c.name for c in source.schema_.columns],
        "rows": page_rows,
        "total_rows": total_rows,
        "offset": offset,
        "limit": limit,
        "returned_rows": len(page_rows),
        "has_more": has_more,
        "next_offset": next_offset,
    }

    _preview_cache_set(cache_key, resp)
    _log_response("PREVIEW", resp)
    return resp
