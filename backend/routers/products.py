"""
Verified Products Router

GET /api/products                      — paginated, searchable list
GET /api/products/chains               — canonical chain identifiers
GET /api/products/{store_chain}/{code} — single record
"""
import aiosqlite
from fastapi import APIRouter, Depends, HTTPException, Query

from db.database import get_db
from models.schemas import PaginatedProducts, VerifiedProduct
from services.store_service import StoreChain
from services.verified_products import VerifiedProductStore

router = APIRouter()


@router.get("", response_model=PaginatedProducts)
async def list_products(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    search: str = "",
    store_chain: str = "",
    db: aiosqlite.Connection = Depends(get_db),
):
    store = VerifiedProductStore(db)
    total = await store.count(search, store_chain)
    items = await store.list_products(limit, offset, search, store_chain)
    return PaginatedProducts(items=items, total=total)


@router.get("/chains", response_model=list[str])
async def list_chains():
    return [c.value for c in StoreChain if c is not StoreChain.OTHER]


@router.get("/{store_chain}/{code}", response_model=VerifiedProduct)
async def get_product(
    store_chain: str,
    code: str,
    db: aiosqlite.Connection = Depends(get_db),
):
    product = await VerifiedProductStore(db).find_one(code, store_chain)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return product
