"""
Party and Product Directory Module

Read-only lookups of the customers (parties) and products an installment plan
references. The engine never owns this master data; the storage-backed
implementations read the records the surrounding retail system maintains.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

from .money import Number, round_money
from .storage import StorageInterface


@dataclass(frozen=True)
class CustomerRef:
    """Customer or other party as seen by the engine"""
    id: str
    name: str
    phone: str = ""
    address: str = ""
    picture: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'phone': self.phone,
            'address': self.address,
            'picture': self.picture
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CustomerRef':
        return cls(
            id=str(data['id']),
            name=data.get('name', ""),
            phone=data.get('phone') or "",
            address=data.get('address') or "",
            picture=data.get('picture')
        )


@dataclass(frozen=True)
class ProductRef:
    """Product as seen by the engine"""
    id: str
    name: str
    price: Decimal
    images: List[str] = field(default_factory=list)

    @property
    def primary_image(self) -> Optional[str]:
        return self.images[0] if self.images else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'price': str(self.price),
            'images': list(self.images)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProductRef':
        return cls(
            id=str(data['id']),
            name=data.get('name', ""),
            price=round_money(data['price']),
            images=list(data.get('images') or [])
        )


class CustomerDirectory(ABC):
    """Lookup of customers and other parties by id"""

    @abstractmethod
    def get_customer(self, customer_id: str) -> Optional[CustomerRef]:
        """Return the party or None when it does not exist"""
        pass


class ProductCatalog(ABC):
    """Lookup of products by id"""

    @abstractmethod
    def get_product(self, product_id: str) -> Optional[ProductRef]:
        """Return the product or None when it does not exist"""
        pass


class StorageCustomerDirectory(CustomerDirectory):
    """Customer directory over the shared ``customers`` table"""

    def __init__(self, storage: StorageInterface, table_name: str = "customers"):
        self.storage = storage
        self.table_name = table_name

    def get_customer(self, customer_id: str) -> Optional[CustomerRef]:
        data = self.storage.load(self.table_name, str(customer_id))
        return CustomerRef.from_dict(data) if data else None

    def register_customer(self, customer_id: str, name: str, phone: str = "",
                          address: str = "", picture: Optional[str] = None) -> CustomerRef:
        """Write a customer record (used by seeding and tests)"""
        customer = CustomerRef(id=str(customer_id), name=name, phone=phone,
                               address=address, picture=picture)
        self.storage.save(self.table_name, customer.id, customer.to_dict())
        return customer


class StorageProductCatalog(ProductCatalog):
    """Product catalog over the shared ``products`` table"""

    def __init__(self, storage: StorageInterface, table_name: str = "products"):
        self.storage = storage
        self.table_name = table_name

    def get_product(self, product_id: str) -> Optional[ProductRef]:
        data = self.storage.load(self.table_name, str(product_id))
        return ProductRef.from_dict(data) if data else None

    def register_product(self, product_id: str, name: str, price: Number,
                         images: Optional[List[str]] = None) -> ProductRef:
        """Write a product record (used by seeding and tests)"""
        product = ProductRef(id=str(product_id), name=name, price=round_money(price),
                             images=list(images or []))
        self.storage.save(self.table_name, product.id, product.to_dict())
        return product
