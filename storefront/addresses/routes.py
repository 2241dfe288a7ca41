from typing import List
from fastapi import APIRouter, Depends

from storefront.addresses.schemas import AddressCreate, AddressUpdate, AddressResponse
from storefront.addresses.service import AddressService
from storefront.dependencies import service, get_current_user
from storefront.shared.utils import SuccessResponse

router = APIRouter(prefix="/addresses", tags=["addresses"])


@router.get("", response_model=SuccessResponse[List[AddressResponse]])
async def list_addresses(user: dict = Depends(get_current_user), addresses: AddressService = Depends(service("addresses"))):
    docs = await addresses.list_for_user(user["id"])
    return SuccessResponse(data=[AddressResponse(**d) for d in docs])


@router.get("/{address_id}", response_model=SuccessResponse[AddressResponse])
async def get_address(address_id: str, user: dict = Depends(get_current_user), addresses: AddressService = Depends(service("addresses"))):
    doc = await addresses.get(user["id"], address_id)
    return SuccessResponse(data=AddressResponse(**doc))


@router.post("", response_model=SuccessResponse[AddressResponse], status_code=201)
async def create_address(data: AddressCreate, user: dict = Depends(get_current_user), addresses: AddressService = Depends(service("addresses"))):
    doc = await addresses.create(user["id"], data)
    return SuccessResponse(data=AddressResponse(**doc), message="Address added")


@router.put("/{address_id}", response_model=SuccessResponse[AddressResponse])
async def update_address(
    address_id: str,
    data: AddressUpdate,
    user: dict = Depends(get_current_user),
    addresses: AddressService = Depends(service("addresses")),
):
    doc = await addresses.update(user["id"], address_id, data)
    return SuccessResponse(data=AddressResponse(**doc), message="Address updated")


@router.put("/{address_id}/default", response_model=SuccessResponse[AddressResponse])
async def set_default_address(address_id: str, user: dict = Depends(get_current_user), addresses: AddressService = Depends(service("addresses"))):
    doc = await addresses.set_default(user["id"], address_id)
    return SuccessResponse(data=AddressResponse(**doc), message="Default address updated")


@router.delete("/{address_id}", response_model=SuccessResponse[dict])
async def delete_address(address_id: str, user: dict = Depends(get_current_user), addresses: AddressService = Depends(service("addresses"))):
    await addresses.delete(user["id"], address_id)
    return SuccessResponse(message="Address deleted")
