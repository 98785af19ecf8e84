import logging
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy.orm import Session

from stockscreener import config
from stockscreener.database import Base, engine, get_db
from stockscreener.normalizers.fundamentals_normalizer import normalize_records, resolve_column_id
from stockscreener.repositories import companies_repo, layouts_repo
from stockscreener.services import access_gate, derived_populator
from stockscreener.services.access_gate import AccessContext
from stockscreener.services.columns import (
    ALL_COLUMNS,
    COLUMNS_BY_ID,
    NEVER_LOCKED,
    is_derived_column,
    parse_custom_layout_key,
)
from stockscreener.services.derived_metrics import enrich_records
from stockscreener.services.errors import LockedColumnError
from stockscreener.services.rank_sort import SortSpec, assign_ranks, build_sort_spec, order_rows, paginate

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Stock Screener Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Base.metadata.create_all(bind=engine)


def _require_dataset(dataset: str) -> str:
    if dataset not in config.DATASET_ENDPOINTS:
        raise HTTPException(status_code=404, detail=f"unknown dataset '{dataset}'")
    return dataset


def _resolve_sort_column(sort_by: str | None) -> str | None:
    """Wire sortBy (camelCase, snake_case, or a column id) → column id. 'none' means no sort."""
    if sort_by is None or not sort_by.strip() or sort_by.strip().lower() == "none":
        return None
    if sort_by in COLUMNS_BY_ID or sort_by == "symbol":
        return sort_by
    column_id = resolve_column_id(sort_by)
    if column_id is None:
        raise HTTPException(status_code=422, detail=f"unknown sort column '{sort_by}'")
    return column_id


def _sort_spec(column_id: str | None, sort_order: str | None) -> SortSpec | None:
    if column_id is None:
        return None
    try:
        return build_sort_spec(column_id, sort_order)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class ImportRequest(BaseModel):
    companies: list[dict[str, Any]]


class ImportResponse(BaseModel):
    ok: bool
    dataset: str
    received: int
    upserted: int
    skipped: int


class ColumnOut(BaseModel):
    id: str
    label: str
    visible: bool
    locked: bool
    derived: bool


class TableResponse(BaseModel):
    dataset: str
    page: int
    limit: int
    total: int
    hasMore: bool
    sort: dict[str, Any] | None = None
    layout: str | None = None
    layoutApplied: bool | None = None
    layoutLockedColumns: list[str] = []
    columns: list[ColumnOut]
    layouts: list[dict[str, Any]]
    rows: list[dict[str, Any]]


class LayoutIn(BaseModel):
    name: str
    columns: list[str] = []


class LayoutPatch(BaseModel):
    name: str | None = None
    columns: list[str] | None = None


class LayoutOut(BaseModel):
    id: int
    key: str
    name: str
    columns: list[str]


def _layout_out(row) -> LayoutOut:
    layout = layouts_repo.to_custom_layout(row)
    return LayoutOut(id=layout.id, key=layout.key, name=layout.name, columns=list(layout.columns))


def _require_user(user_id: str | None) -> str:
    if not user_id or not user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return user_id.strip()


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
def healthcheck():
    return {"status": "ok"}


# user layouts are declared ahead of /api/{dataset} so the literal path wins

@app.get("/api/user-layouts", response_model=list[LayoutOut])
def list_user_layouts(x_user_id: str | None = Header(None), db: Session = Depends(get_db)):
    user_id = _require_user(x_user_id)
    return [_layout_out(row) for row in layouts_repo.list_layouts(db, user_id)]


@app.post("/api/user-layouts", response_model=LayoutOut, status_code=201)
def create_user_layout(body: LayoutIn, x_user_id: str | None = Header(None), db: Session = Depends(get_db)):
    user_id = _require_user(x_user_id)
    try:
        row = layouts_repo.create_layout(db, user_id, body.name, body.columns)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if row is None:
        raise HTTPException(status_code=500, detail="layout could not be saved")
    return _layout_out(row)


@app.put("/api/user-layouts/{layout_id}", response_model=LayoutOut)
def update_user_layout(
    layout_id: int,
    body: LayoutPatch,
    x_user_id: str | None = Header(None),
    db: Session = Depends(get_db),
):
    user_id = _require_user(x_user_id)
    if layouts_repo.get_layout(db, user_id, layout_id) is None:
        raise HTTPException(status_code=404, detail=f"unknown layout {layout_id}")
    try:
        row = layouts_repo.update_layout(db, user_id, layout_id, name=body.name, columns=body.columns)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if row is None:
        raise HTTPException(status_code=500, detail="layout could not be saved")
    return _layout_out(row)


@app.delete("/api/user-layouts/{layout_id}")
def delete_user_layout(layout_id: int, x_user_id: str | None = Header(None), db: Session = Depends(get_db)):
    user_id = _require_user(x_user_id)
    if not layouts_repo.delete_layout(db, user_id, layout_id):
        raise HTTPException(status_code=404, detail=f"unknown layout {layout_id}")
    return {"ok": True}


@app.get("/api/{dataset}")
def list_companies(
    dataset: str,
    offset: int = 0,
    limit: int = config.PAGE_LIMIT,
    sortBy: str | None = None,
    sortOrder: str | None = None,
    search: str | None = None,
    db: Session = Depends(get_db),
):
    """Fundamentals source: {companies, total, hasMore}. Derived columns cannot be sort keys here."""
    _require_dataset(dataset)
    column_id = _resolve_sort_column(sortBy)
    if is_derived_column(column_id):
        raise HTTPException(status_code=422, detail=f"'{column_id}' is computed client-side and cannot be sorted here")
    sort = _sort_spec(column_id, sortOrder)
    return companies_repo.list_page(db, dataset, offset=offset, limit=limit, sort=sort, search=search)


@app.get("/api/{dataset}/table", response_model=TableResponse)
def company_table(
    dataset: str,
    page: int = 0,
    limit: int = config.PAGE_LIMIT,
    sortBy: str | None = None,
    sortOrder: str | None = None,
    search: str | None = None,
    layout: str | None = None,
    tier: str | None = None,
    x_user_id: str | None = Header(None),
    db: Session = Depends(get_db),
):
    """
    Engine view of a dataset: derived metrics, tier gating, ranking.
    Locked columns are hidden and their values are stripped from the rows.
    `layout` is a preset key or "custom:<id>" for one of the caller's saved layouts.
    """
    _require_dataset(dataset)
    ctx = AccessContext(tier=tier)

    column_id = _resolve_sort_column(sortBy)
    if column_id is not None:
        try:
            access_gate.check_sort_key(column_id, ctx, dataset)
        except LockedColumnError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
    sort = _sort_spec(column_id, sortOrder)

    visibility = access_gate.default_visibility(ctx, dataset)
    layout_applied = None
    layout_locked_columns: list[str] = []
    custom_id = parse_custom_layout_key(layout)
    user_layouts = layouts_repo.list_layouts(db, x_user_id.strip()) if x_user_id and x_user_id.strip() else []
    if custom_id is not None:
        row = next((r for r in user_layouts if r.id == custom_id), None)
        if row is None:
            raise HTTPException(status_code=404, detail=f"unknown layout '{layout}'")
        visibility, layout_locked_columns = access_gate.apply_custom_layout(
            layouts_repo.to_custom_layout(row), ctx, dataset
        )
        layout_applied = True
    elif layout is not None:
        try:
            layout_applied = not access_gate.is_layout_locked(layout, ctx, dataset)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"unknown layout '{layout}'")
        visibility = access_gate.apply_layout(visibility, layout, ctx, dataset)

    records = enrich_records(companies_repo.get_company_records(db, dataset))
    needle = (search or "").strip().lower()
    if needle:
        records = [
            r for r in records
            if needle in (r.get("symbol") or "").lower() or needle in (r.get("name") or "").lower()
        ]
    ordered = order_rows(records, sort, server_sorted=False)
    rows = assign_ranks(paginate(ordered, page, limit), max(page, 0) * limit)

    locked = {c.id for c in ALL_COLUMNS if access_gate.is_locked(c.id, ctx.tier, dataset, ctx.allow_override)}
    keep = {"symbol", "logo_url", "country", "is_watched"} | {
        cid for cid, on in visibility.items() if on and cid not in locked
    }
    projected = [{k: v for k, v in row.items() if k in keep} for row in rows]

    return TableResponse(
        dataset=dataset,
        page=page,
        limit=limit,
        total=len(ordered),
        hasMore=max(page, 0) * limit + len(rows) < len(ordered),
        sort={"columnId": sort.column_id, "direction": sort.direction, "isDerivedSort": sort.is_derived_sort}
        if sort else None,
        layout=layout,
        layoutApplied=layout_applied,
        layoutLockedColumns=layout_locked_columns,
        columns=[
            ColumnOut(
                id=c.id,
                label=c.label,
                visible=bool(visibility.get(c.id)) or c.id in NEVER_LOCKED,
                locked=c.id in locked,
                derived=c.is_derived,
            )
            for c in ALL_COLUMNS
        ],
        layouts=access_gate.layout_menu(ctx, dataset)
        + access_gate.custom_layout_menu(
            [layouts_repo.to_custom_layout(r) for r in user_layouts], ctx, dataset
        ),
        rows=projected,
    )


@app.post("/api/{dataset}/import", response_model=ImportResponse)
def import_companies(dataset: str, body: ImportRequest, db: Session = Depends(get_db)):
    _require_dataset(dataset)
    records = normalize_records(body.companies)
    valid = [r for r in records if r["symbol"]]
    upserted = companies_repo.upsert_companies(db, dataset, valid)
    return ImportResponse(
        ok=upserted == len(valid),
        dataset=dataset,
        received=len(records),
        upserted=upserted,
        skipped=len(records) - upserted,
    )


@app.post("/api/{dataset}/populate-derived")
def populate_derived(dataset: str, db: Session = Depends(get_db)):
    _require_dataset(dataset)
    return derived_populator.populate_dataset(db, dataset)
