from typing import List, Optional
from fastapi import APIRouter, Depends, Query

from storefront.accounts.models import PermissionModule, PermissionAction
from storefront.catalog.service import ProductService
from storefront.dependencies import service, require_permission
from storefront.inventory.schemas import (
    WarehouseCreate, WarehouseUpdate, WarehouseResponse,
    StockAdjustRequest, StockThresholdUpdate, StockResponse, StockAdjustmentResponse,
)
from storefront.inventory.service import WarehouseService, StockService, InsufficientStockError
from storefront.shared.utils import SuccessResponse, NotFoundException

warehouses_router = APIRouter(prefix="/warehouses", tags=["warehouses"])
stock_router = APIRouter(prefix="/stock", tags=["stock"])


# --- Warehouses ---

@warehouses_router.get("", response_model=SuccessResponse[List[WarehouseResponse]])
async def list_warehouses(
    admin: dict = Depends(require_permission(PermissionModule.WAREHOUSES, PermissionAction.READ)),
    warehouses: WarehouseService = Depends(service("warehouses")),
):
    docs = await warehouses.list()
    return SuccessResponse(data=[WarehouseResponse(**d) for d in docs])


@warehouses_router.get("/{warehouse_id}", response_model=SuccessResponse[WarehouseResponse])
async def get_warehouse(
    warehouse_id: str,
    admin: dict = Depends(require_permission(PermissionModule.WAREHOUSES, PermissionAction.READ)),
    warehouses: WarehouseService = Depends(service("warehouses")),
):
    return SuccessResponse(data=WarehouseResponse(**await warehouses.get(warehouse_id)))


@warehouses_router.post("", response_model=SuccessResponse[WarehouseResponse], status_code=201)
async def create_warehouse(
    data: WarehouseCreate,
    admin: dict = Depends(require_permission(PermissionModule.WAREHOUSES, PermissionAction.CREATE)),
    warehouses: WarehouseService = Depends(service("warehouses")),
):
    doc = await warehouses.create(data)
    return SuccessResponse(data=WarehouseResponse(**doc), message="Warehouse created")


@warehouses_router.put("/{warehouse_id}", response_model=SuccessResponse[WarehouseResponse])
async def update_warehouse(
    warehouse_id: str,
    data: WarehouseUpdate,
    admin: dict = Depends(require_permission(PermissionModule.WAREHOUSES, PermissionAction.UPDATE)),
    warehouses: WarehouseService = Depends(service("warehouses")),
):
    doc = await warehouses.update(warehouse_id, data)
    return SuccessResponse(data=WarehouseResponse(**doc), message="Warehouse updated")


@warehouses_router.delete("/{warehouse_id}", response_model=SuccessResponse[dict])
async def delete_warehouse(
    warehouse_id: str,
    admin: dict = Depends(require_permission(PermissionModule.WAREHOUSES, PermissionAction.DELETE)),
    warehouses: WarehouseService = Depends(service("warehouses")),
):
    await warehouses.delete(warehouse_id)
    return SuccessResponse(message="Warehouse deleted")


# --- Stock ---

@stock_router.get("", response_model=SuccessResponse[List[StockResponse]])
async def list_stock(
    product_id: Optional[str] = None,
    warehouse_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    admin: dict = Depends(require_permission(PermissionModule.STOCK, PermissionAction.READ)),
    stock: StockService = Depends(service("stock")),
):
    docs = await stock.list(product_id, warehouse_id, skip=(page - 1) * limit, limit=limit)
    return SuccessResponse(data=[StockResponse(**d) for d in docs])


@stock_router.get("/low", response_model=SuccessResponse[List[StockResponse]])
async def low_stock(
    warehouse_id: Optional[str] = None,
    admin: dict = Depends(require_permission(PermissionModule.STOCK, PermissionAction.READ)),
    stock: StockService = Depends(service("stock")),
):
    docs = await stock.low_stock(warehouse_id)
    return SuccessResponse(data=[StockResponse(**d) for d in docs])


@stock_router.post("/adjust", response_model=SuccessResponse[StockResponse])
async def adjust_stock(
    data: StockAdjustRequest,
    admin: dict = Depends(require_permission(PermissionModule.STOCK, PermissionAction.UPDATE)),
    stock: StockService = Depends(service("stock")),
    warehouses: WarehouseService = Depends(service("warehouses")),
    products: ProductService = Depends(service("products")),
):
    await warehouses.get(data.warehouse_id)
    product = await products.get(data.product_id)
    if data.variant_id and not any(v["id"] == data.variant_id for v in product.get("variants", [])):
        raise NotFoundException("Product variant not found")
    try:
        doc = await stock.adjust(
            data.product_id, data.variant_id, data.warehouse_id, data.delta, data.reason,
            actor_id=admin["id"], notes=data.notes,
        )
    except InsufficientStockError:
        raise InsufficientStockError("Adjustment would make stock negative")
    return SuccessResponse(data=StockResponse(**doc), message="Stock adjusted")


@stock_router.put("/{stock_id}", response_model=SuccessResponse[StockResponse])
async def update_threshold(
    stock_id: str,
    data: StockThresholdUpdate,
    admin: dict = Depends(require_permission(PermissionModule.STOCK, PermissionAction.UPDATE)),
    stock: StockService = Depends(service("stock")),
):
    doc = await stock.set_threshold(stock_id, data.low_stock_threshold)
    return SuccessResponse(data=StockResponse(**doc), message="Threshold updated")


@stock_router.get("/{stock_id}/history", response_model=SuccessResponse[List[StockAdjustmentResponse]])
async def stock_history(
    stock_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    admin: dict = Depends(require_permission(PermissionModule.STOCK, PermissionAction.READ)),
    stock: StockService = Depends(service("stock")),
):
    docs = await stock.history(stock_id, skip=(page - 1) * limit, limit=limit)
    return SuccessResponse(data=[StockAdjustmentResponse(**d) for d in docs])
