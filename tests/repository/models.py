"""Entities used by the repository tests."""

import uuid

from sqlmodel import Field, Relationship, SQLModel


class Customer(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    name: str
    email: str = Field(unique=True)

    orders: list["Order"] = Relationship(back_populates="customer")


class Order(SQLModel, table=True):
    __tablename__ = "orders"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    number: str
    total: float = 0.0
    status: str = "open"
    customer_id: uuid.UUID | None = Field(default=None, foreign_key="customer.id")

    customer: Customer | None = Relationship(back_populates="orders")
    lines: list["OrderLine"] = Relationship(back_populates="order")


class OrderLine(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    product: str
    quantity: int = 1
    order_id: uuid.UUID | None = Field(default=None, foreign_key="orders.id")

    order: Order | None = Relationship(back_populates="lines")


class Membership(SQLModel, table=True):
    group_name: str = Field(primary_key=True)
    member_name: str = Field(primary_key=True)
