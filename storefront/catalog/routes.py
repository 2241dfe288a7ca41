from decimal import Decimal
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, Request

from storefront.accounts.models import PermissionModule, PermissionAction
from storefront.catalog.schemas import (
    CategoryCreate, CategoryUpdate, CategoryResponse,
    ProductCreate, ProductUpdate, ProductResponse, ProductListResponse,
    BannerCreate, BannerUpdate, BannerResponse,
)
from storefront.catalog.service import CategoryService, ProductService, BannerService
from storefront.dependencies import service, require_permission
from storefront.shared.money import to_paise
from storefront.shared.security_config import limiter, CATALOG_RATE
from storefront.shared.utils import SuccessResponse

categories_router = APIRouter(prefix="/categories", tags=["categories"])
products_router = APIRouter(prefix="/products", tags=["products"])
banners_router = APIRouter(prefix="/banners", tags=["banners"])


# --- Categories ---

@categories_router.get("", response_model=SuccessResponse[List[CategoryResponse]])
async def list_categories(parent_id: Optional[str] = None, categories: CategoryService = Depends(service("categories"))):
    docs = await categories.list(parent_id=parent_id)
    return SuccessResponse(data=[CategoryResponse(**d) for d in docs])


@categories_router.get("/{category_id}", response_model=SuccessResponse[CategoryResponse])
async def get_category(category_id: str, categories: CategoryService = Depends(service("categories"))):
    return SuccessResponse(data=CategoryResponse(**await categories.get(category_id)))


@categories_router.post("", response_model=SuccessResponse[CategoryResponse], status_code=201)
async def create_category(
    data: CategoryCreate,
    admin: dict = Depends(require_permission(PermissionModule.CATEGORIES, PermissionAction.CREATE)),
    categories: CategoryService = Depends(service("categories")),
):
    doc = await categories.create(data)
    return SuccessResponse(data=CategoryResponse(**doc), message="Category created")


@categories_router.put("/{category_id}", response_model=SuccessResponse[CategoryResponse])
async def update_category(
    category_id: str,
    data: CategoryUpdate,
    admin: dict = Depends(require_permission(PermissionModule.CATEGORIES, PermissionAction.UPDATE)),
    categories: CategoryService = Depends(service("categories")),
):
    doc = await categories.update(category_id, data)
    return SuccessResponse(data=CategoryResponse(**doc), message="Category updated")


@categories_router.delete("/{category_id}", response_model=SuccessResponse[dict])
async def delete_category(
    category_id: str,
    admin: dict = Depends(require_permission(PermissionModule.CATEGORIES, PermissionAction.DELETE)),
    categories: CategoryService = Depends(service("categories")),
):
    await categories.delete(category_id)
    return SuccessResponse(message="Category deleted")


# --- Products ---

@products_router.get("", response_model=SuccessResponse[ProductListResponse])
@limiter.limit(CATALOG_RATE)
async def list_products(
    request: Request,
    category_id: Optional[str] = None,
    search: Optional[str] = None,
    min_price: Optional[Decimal] = Query(None, ge=0),
    max_price: Optional[Decimal] = Query(None, ge=0),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    products: ProductService = Depends(service("products")),
):
    docs, total = await products.list(
        category_id=category_id,
        search=search,
        min_price=to_paise(min_price) if min_price is not None else None,
        max_price=to_paise(max_price) if max_price is not None else None,
        skip=(page - 1) * limit,
        limit=limit,
    )
    return SuccessResponse(data=ProductListResponse(
        products=[ProductResponse(**d) for d in docs],
        total=total,
        page=page,
        limit=limit,
    ))


@products_router.get("/{product_id}", response_model=SuccessResponse[ProductResponse])
@limiter.limit(CATALOG_RATE)
async def get_product(request: Request, product_id: str, products: ProductService = Depends(service("products"))):
    return SuccessResponse(data=ProductResponse(**await products.get(product_id)))


@products_router.post("", response_model=SuccessResponse[ProductResponse], status_code=201)
async def create_product(
    data: ProductCreate,
    admin: dict = Depends(require_permission(PermissionModule.PRODUCTS, PermissionAction.CREATE)),
    products: ProductService = Depends(service("products")),
):
    doc = await products.create(data)
    return SuccessResponse(data=ProductResponse(**doc), message="Product created")


@products_router.put("/{product_id}", response_model=SuccessResponse[ProductResponse])
async def update_product(
    product_id: str,
    data: ProductUpdate,
    admin: dict = Depends(require_permission(PermissionModule.PRODUCTS, PermissionAction.UPDATE)),
    products: ProductService = Depends(service("products")),
):
    doc = await products.update(product_id, data)
    return SuccessResponse(data=ProductResponse(**doc), message="Product updated")


@products_router.delete("/{product_id}", response_model=SuccessResponse[dict])
async def delete_product(
    product_id: str,
    admin: dict = Depends(require_permission(PermissionModule.PRODUCTS, PermissionAction.DELETE)),
    products: ProductService = Depends(service("products")),
):
    await products.delete(product_id)
    return SuccessResponse(message="Product deleted")


# --- Banners ---

@banners_router.get("/active", response_model=SuccessResponse[List[BannerResponse]])
async def list_active_banners(banners: BannerService = Depends(service("banners"))):
    docs = await banners.list_active()
    return SuccessResponse(data=[BannerResponse(**d) for d in docs])


@banners_router.get("", response_model=SuccessResponse[List[BannerResponse]])
async def list_banners(
    admin: dict = Depends(require_permission(PermissionModule.BANNERS, PermissionAction.READ)),
    banners: BannerService = Depends(service("banners")),
):
    docs = await banners.list()
    return SuccessResponse(data=[BannerResponse(**d) for d in docs])


@banners_router.get("/{banner_id}", response_model=SuccessResponse[BannerResponse])
async def get_banner(banner_id: str, banners: BannerService = Depends(service("banners"))):
    return SuccessResponse(data=BannerResponse(**await banners.get(banner_id)))


@banners_router.post("", response_model=SuccessResponse[BannerResponse], status_code=201)
async def create_banner(
    data: BannerCreate,
    admin: dict = Depends(require_permission(PermissionModule.BANNERS, PermissionAction.CREATE)),
    banners: BannerService = Depends(service("banners")),
):
    doc = await banners.create(data)
    return SuccessResponse(data=BannerResponse(**doc), message="Banner created")


@banners_router.put("/{banner_id}", response_model=SuccessResponse[BannerResponse])
async def update_banner(
    banner_id: str,
    data: BannerUpdate,
    admin: dict = Depends(require_permission(PermissionModule.BANNERS, PermissionAction.UPDATE)),
    banners: BannerService = Depends(service("banners")),
):
    doc = await banners.update(banner_id, data)
    return SuccessResponse(data=BannerResponse(**doc), message="Banner updated")


@banners_router.delete("/{banner_id}", response_model=SuccessResponse[dict])
async def delete_banner(
    banner_id: str,
    admin: dict = Depends(require_permission(PermissionModule.BANNERS, PermissionAction.DELETE)),
    banners: BannerService = Depends(service("banners")),
):
    await banners.delete(banner_id)
    return SuccessResponse(message="Banner deleted")
