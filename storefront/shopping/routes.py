from fastapi import APIRouter, Depends

from storefront.dependencies import service, get_current_user
from storefront.shared.utils import SuccessResponse
from storefront.shopping.schemas import (
    CartItemAdd, CartItemUpdate, CartResponse, WishlistItemAdd, WishlistResponse,
)
from storefront.shopping.service import CartService, WishlistService

cart_router = APIRouter(prefix="/cart", tags=["cart"])
wishlist_router = APIRouter(prefix="/wishlist", tags=["wishlist"])


# Cart
@cart_router.get("", response_model=SuccessResponse[CartResponse])
async def get_cart(user: dict = Depends(get_current_user), carts: CartService = Depends(service("carts"))):
    return SuccessResponse(data=CartResponse(**await carts.get_cart(user["id"])))


@cart_router.post("/items", response_model=SuccessResponse[CartResponse])
async def add_to_cart(item: CartItemAdd, user: dict = Depends(get_current_user), carts: CartService = Depends(service("carts"))):
    cart = await carts.add_item(user["id"], item)
    return SuccessResponse(data=CartResponse(**cart), message="Item added to cart")


@cart_router.put("/items/{item_id}", response_model=SuccessResponse[CartResponse])
async def update_cart_item(
    item_id: str,
    update: CartItemUpdate,
    user: dict = Depends(get_current_user),
    carts: CartService = Depends(service("carts")),
):
    cart = await carts.update_item(user["id"], item_id, update.quantity)
    return SuccessResponse(data=CartResponse(**cart))


@cart_router.delete("/items/{item_id}", response_model=SuccessResponse[CartResponse])
async def remove_cart_item(item_id: str, user: dict = Depends(get_current_user), carts: CartService = Depends(service("carts"))):
    cart = await carts.remove_item(user["id"], item_id)
    return SuccessResponse(data=CartResponse(**cart), message="Item removed")


@cart_router.delete("", response_model=SuccessResponse[dict])
async def clear_cart(user: dict = Depends(get_current_user), carts: CartService = Depends(service("carts"))):
    await carts.clear(user["id"])
    return SuccessResponse(message="Cart cleared")


# Wishlist
@wishlist_router.get("", response_model=SuccessResponse[WishlistResponse])
async def get_wishlist(user: dict = Depends(get_current_user), wishlists: WishlistService = Depends(service("wishlists"))):
    return SuccessResponse(data=WishlistResponse(**await wishlists.get_wishlist(user["id"])))


@wishlist_router.post("/items", response_model=SuccessResponse[WishlistResponse])
async def add_to_wishlist(
    item: WishlistItemAdd,
    user: dict = Depends(get_current_user),
    wishlists: WishlistService = Depends(service("wishlists")),
):
    wishlist = await wishlists.add_item(user["id"], item.product_id)
    return SuccessResponse(data=WishlistResponse(**wishlist), message="Added to wishlist")


@wishlist_router.delete("/items/{product_id}", response_model=SuccessResponse[WishlistResponse])
async def remove_from_wishlist(
    product_id: str,
    user: dict = Depends(get_current_user),
    wishlists: WishlistService = Depends(service("wishlists")),
):
    wishlist = await wishlists.remove_item(user["id"], product_id)
    return SuccessResponse(data=WishlistResponse(**wishlist), message="Removed from wishlist")


@wishlist_router.delete("", response_model=SuccessResponse[dict])
async def clear_wishlist(user: dict = Depends(get_current_user), wishlists: WishlistService = Depends(service("wishlists"))):
    await wishlists.clear(user["id"])
    return SuccessResponse(message="Wishlist cleared")
