#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Database management and persistence layer for the marketplace server.

This module provides the schema definitions, database session management, and
asynchronous data access helpers used by the server. It utilizes SQLAlchemy with
SQLite (via aiosqlite) and implements a multi-database architecture separating
product catalog data from transactional data (stock, orders, the stock ledger).

Key features include:
- `DatabaseManager`: Handles asynchronous engine initialization and session
  factory setup for both 'Products' and 'Transactions' databases.
- WAL Mode: Automatically enables SQLite Write-Ahead Logging to support
  concurrent access from request handlers and the cleanup scheduler.
- Immediate transactions: every SQLite transaction begins with
  `BEGIN IMMEDIATE`, so check-then-write sequences (order finalization,
  reservation staging, stock adjustments) are serialized between connections.
  Row locks (`SELECT ... FOR UPDATE`) are requested as well for databases that
  support them.
- Declarative Models: Defines tables for products, inventory, saved addresses,
  orders, order items, refunds, stock operations and the activity log.
- Data Access Helpers: A suite of asynchronous functions for CRUD operations on
  the database models.
"""

import datetime
import decimal
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple
import uuid

from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import delete
from sqlalchemy import event
from sqlalchemy import ForeignKey
from sqlalchemy import func
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import Numeric
from sqlalchemy import select
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy import UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from sqlalchemy.orm import sessionmaker

from marketplace_checkout.enums import OrderStatus
from marketplace_checkout.enums import RefundStatus
from marketplace_checkout.enums import StockOperationType

logger = logging.getLogger(__name__)

ProductBase = declarative_base()
TransactionBase = declarative_base()


def utcnow() -> datetime.datetime:
  """Returns the current UTC time as a naive datetime, as stored in SQLite."""
  return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def _enable_immediate_transactions(engine: AsyncEngine) -> None:
  """Makes every transaction on a SQLite engine take the write lock up front."""

  @event.listens_for(engine.sync_engine, "connect")
  def _on_connect(dbapi_connection, connection_record):
    del connection_record  # Unused.
    # Stop the driver from emitting its own deferred BEGIN.
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=10000")
    cursor.close()

  @event.listens_for(engine.sync_engine, "begin")
  def _on_begin(conn):
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for_path(path: str, **engine_kwargs: Any) -> AsyncEngine:
  """Creates an async SQLite engine configured for serialized writers."""
  engine = create_async_engine(
      f"sqlite+aiosqlite:///{path}", echo=False, **engine_kwargs
  )
  _enable_immediate_transactions(engine)
  return engine


class DatabaseManager:
  """Manages database engines and sessions without using global variables."""

  def __init__(self) -> None:
    self.products_engine: Optional[AsyncEngine] = None
    self.transactions_engine: Optional[AsyncEngine] = None
    self.products_session_factory: Optional[sessionmaker] = None
    self.transactions_session_factory: Optional[sessionmaker] = None

  async def init_dbs(
      self, products_path: str, transactions_path: str, **engine_kwargs: Any
  ) -> None:
    """Initializes database engines and creates tables.

    Args:
      products_path: Path to the products SQLite file.
      transactions_path: Path to the transactions SQLite file.
      **engine_kwargs: Extra `create_async_engine` arguments (e.g. poolclass).
    """
    # Products DB Setup
    self.products_engine = create_engine_for_path(products_path, **engine_kwargs)
    self.products_session_factory = sessionmaker(
        self.products_engine, expire_on_commit=False, class_=AsyncSession
    )

    async with self.products_engine.begin() as conn:
      await conn.run_sync(ProductBase.metadata.create_all)

    # Transactions DB Setup (includes Inventory)
    self.transactions_engine = create_engine_for_path(
        transactions_path, **engine_kwargs
    )
    self.transactions_session_factory = sessionmaker(
        self.transactions_engine, expire_on_commit=False, class_=AsyncSession
    )

    async with self.transactions_engine.begin() as conn:
      await conn.run_sync(TransactionBase.metadata.create_all)

  async def close(self) -> None:
    """Closes all database engines."""
    if self.products_engine:
      await self.products_engine.dispose()
    if self.transactions_engine:
      await self.transactions_engine.dispose()

  @property
  def is_initialized(self) -> bool:
    return self.transactions_session_factory is not None


# Global manager instance (to be initialized via lifespan)
manager = DatabaseManager()


class Product(ProductBase):
  __tablename__ = "products"

  id = Column(String, primary_key=True)
  name = Column(String)
  price = Column(Numeric(10, 2))
  image_url = Column(String, nullable=True)
  store_id = Column(String, index=True)
  store_name = Column(String)


class Inventory(TransactionBase):
  __tablename__ = "inventory"

  product_id = Column(String, primary_key=True)
  quantity = Column(Integer, default=0)


class Customer(TransactionBase):
  __tablename__ = "customers"

  id = Column(String, primary_key=True)
  name = Column(String)
  email = Column(String, index=True)

  addresses = relationship("CustomerAddress", back_populates="customer")


class CustomerAddress(TransactionBase):
  __tablename__ = "customer_addresses"

  id = Column(String, primary_key=True)
  customer_id = Column(String, ForeignKey("customers.id"), index=True)
  label = Column(String, nullable=True)
  full_name = Column(String)
  phone_number = Column(String)
  street_address = Column(String)
  apt_number = Column(String, nullable=True)
  city = Column(String)
  state_province = Column(String)
  zip_code = Column(String)
  country = Column(String)
  is_default = Column(Boolean, default=False)
  created_at = Column(DateTime, default=utcnow)

  customer = relationship("Customer", back_populates="addresses")


class Order(TransactionBase):
  """One seller's slice of a checkout."""

  __tablename__ = "orders"
  __table_args__ = (
      UniqueConstraint(
          "stripe_session_id", "store_id", name="uq_orders_session_store"
      ),
  )

  id = Column(String, primary_key=True)
  customer_id = Column(String, nullable=True, index=True)
  store_id = Column(String, index=True)
  store_name = Column(String)
  total_amount = Column(Numeric(12, 2))
  status = Column(String, index=True)
  # Shipping address snapshot, copied when the order is written.
  shipping_street_address = Column(String)
  shipping_apt_number = Column(String, nullable=True)
  shipping_city = Column(String)
  shipping_state_province = Column(String)
  shipping_zip_code = Column(String)
  shipping_country = Column(String)
  payment_method = Column(String)
  stripe_session_id = Column(String, nullable=True, index=True)
  payment_intent_id = Column(String, nullable=True)
  order_date = Column(DateTime, index=True)
  shipped_date = Column(DateTime, nullable=True)
  delivered_date = Column(DateTime, nullable=True)
  tracking_number = Column(String, nullable=True)
  guest_email = Column(String, nullable=True)
  guest_full_name = Column(String, nullable=True)
  guest_phone_number = Column(String, nullable=True)
  created_at = Column(DateTime, default=utcnow)
  updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

  items = relationship(
      "OrderItem",
      back_populates="order",
      cascade="all, delete-orphan",
      lazy="selectin",
      order_by="OrderItem.position",
  )


class OrderItem(TransactionBase):
  __tablename__ = "order_items"

  id = Column(String, primary_key=True)
  order_id = Column(String, ForeignKey("orders.id"), index=True)
  position = Column(Integer, default=0)
  product_id = Column(String, index=True)
  product_name = Column(String)
  product_image = Column(String, nullable=True)
  quantity = Column(Integer)
  price = Column(Numeric(10, 2))
  subtotal = Column(Numeric(12, 2))
  is_reservation = Column(Boolean, default=False)
  reservation_date = Column(String, nullable=True)  # YYYY-MM-DD
  reservation_time = Column(String, nullable=True)  # HH:MM
  reservation_notes = Column(Text, nullable=True)
  created_at = Column(DateTime, default=utcnow)

  order = relationship("Order", back_populates="items")


class Refund(TransactionBase):
  __tablename__ = "refunds"

  id = Column(String, primary_key=True)
  order_id = Column(String, ForeignKey("orders.id"), index=True)
  payment_intent_id = Column(String, nullable=True)
  refund_id = Column(String)
  amount = Column(Numeric(12, 2))
  currency = Column(String, default="usd")
  reason = Column(String, nullable=True)
  status = Column(String, index=True)
  refunded_by = Column(String, nullable=True)
  created_at = Column(DateTime, default=utcnow)
  updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class StockOperation(TransactionBase):
  __tablename__ = "stock_operations"

  id = Column(String, primary_key=True)
  product_id = Column(String, index=True)
  type = Column(String)
  quantity = Column(Integer)
  reason = Column(Text, nullable=True)
  order_id = Column(String, nullable=True, index=True)
  previous_quantity = Column(Integer)
  new_quantity = Column(Integer)
  performed_by = Column(String, index=True)
  performed_at = Column(DateTime, default=utcnow, index=True)


class ActivityLog(TransactionBase):
  __tablename__ = "activity_logs"

  id = Column(Integer, primary_key=True, autoincrement=True)
  type = Column(String, index=True)
  message = Column(Text)
  user_name = Column(String)
  details = Column("metadata", JSON, nullable=True)
  created_at = Column(DateTime, default=utcnow)


# --- Data Access Helpers ---


async def get_product(
    session: AsyncSession, product_id: str
) -> Optional[Product]:
  """Retrieves a product by ID."""
  return await session.get(Product, product_id)


async def get_products(
    session: AsyncSession, product_ids: Iterable[str]
) -> Dict[str, Product]:
  """Retrieves several products in one query, keyed by ID."""
  ids = list(set(product_ids))
  if not ids:
    return {}
  result = await session.execute(select(Product).where(Product.id.in_(ids)))
  return {p.id: p for p in result.scalars().all()}


async def get_inventory(
    session: AsyncSession, product_id: str
) -> Optional[int]:
  """Retrieves the inventory quantity for a product."""
  result = await session.execute(
      select(Inventory.quantity).where(Inventory.product_id == product_id)
  )
  return result.scalar_one_or_none()


async def lock_inventory(session: AsyncSession, product_id: str) -> Inventory:
  """Returns the product's inventory row locked for update, creating it if needed."""
  result = await session.execute(
      select(Inventory)
      .where(Inventory.product_id == product_id)
      .with_for_update()
  )
  inventory = result.scalar_one_or_none()
  if inventory is None:
    inventory = Inventory(product_id=product_id, quantity=0)
    session.add(inventory)
    await session.flush()
  return inventory


async def get_customer_address(
    session: AsyncSession, address_id: str
) -> Optional[CustomerAddress]:
  """Retrieves a saved shipping address by ID."""
  return await session.get(CustomerAddress, address_id)


async def save_customer_address(
    session: AsyncSession,
    customer_id: str,
    address: Dict[str, Any],
    email: Optional[str] = None,
) -> str:
  """Saves a customer address, reusing existing ID if content matches.

  Args:
    session: The database session.
    customer_id: The owning customer's ID.
    address: The address dictionary containing 'full_name', 'street_address',
      'city', etc.
    email: The customer's email, recorded when the customer row is created.

  Returns:
    The ID of the saved or existing address.
  """
  customer = await session.get(Customer, customer_id)
  if not customer:
    # Create customer if missing
    customer = Customer(
        id=customer_id, email=email, name=address.get("full_name") or "Unknown"
    )
    session.add(customer)
    await session.flush()

  # Check for existing address with same content
  stmt = select(CustomerAddress).where(
      CustomerAddress.customer_id == customer_id,
      CustomerAddress.full_name == address.get("full_name"),
      CustomerAddress.street_address == address.get("street_address"),
      CustomerAddress.apt_number == address.get("apt_number"),
      CustomerAddress.city == address.get("city"),
      CustomerAddress.state_province == address.get("state_province"),
      CustomerAddress.zip_code == address.get("zip_code"),
      CustomerAddress.country == address.get("country"),
  )
  result = await session.execute(stmt)
  existing_addr = result.scalars().first()

  if existing_addr:
    return existing_addr.id

  new_id = str(uuid.uuid4())
  session.add(
      CustomerAddress(
          id=new_id,
          customer_id=customer_id,
          label=address.get("label"),
          full_name=address.get("full_name"),
          phone_number=address.get("phone_number"),
          street_address=address.get("street_address"),
          apt_number=address.get("apt_number"),
          city=address.get("city"),
          state_province=address.get("state_province"),
          zip_code=address.get("zip_code"),
          country=address.get("country"),
          is_default=False,
      )
  )
  return new_id


async def get_order(
    session: AsyncSession, order_id: str, for_update: bool = False
) -> Optional[Order]:
  """Retrieves an order (with its items) by ID."""
  stmt = select(Order).where(Order.id == order_id)
  if for_update:
    stmt = stmt.with_for_update()
  result = await session.execute(stmt)
  return result.scalar_one_or_none()


async def get_orders_by_session(
    session: AsyncSession, stripe_session_id: str, for_update: bool = False
) -> List[Order]:
  """Retrieves every order bound to a payment session."""
  stmt = (
      select(Order)
      .where(Order.stripe_session_id == stripe_session_id)
      .order_by(Order.created_at, Order.id)
  )
  if for_update:
    stmt = stmt.with_for_update()
  result = await session.execute(stmt)
  return list(result.scalars().all())


async def delete_staged_orders_by_session(
    session: AsyncSession, stripe_session_id: str
) -> int:
  """Deletes the staged (pending_payment) orders of a session.

  Committed orders bound to the same session are left untouched.

  Returns:
    The number of orders removed.
  """
  result = await session.execute(
      select(Order.id).where(
          Order.stripe_session_id == stripe_session_id,
          Order.status == OrderStatus.PENDING_PAYMENT.value,
      )
  )
  order_ids = list(result.scalars().all())
  if not order_ids:
    return 0

  await session.execute(
      delete(OrderItem).where(OrderItem.order_id.in_(order_ids))
  )
  await session.execute(delete(Order).where(Order.id.in_(order_ids)))
  return len(order_ids)


async def find_booked_reservations(
    session: AsyncSession, slots: Iterable[Tuple[str, str, str]]
) -> List[Tuple[str, str, str]]:
  """Returns the (product_id, date, time) slots held by a non-cancelled order."""
  booked = []
  for product_id, reservation_date, reservation_time in slots:
    result = await session.execute(
        select(func.count(OrderItem.id))
        .join(Order, OrderItem.order_id == Order.id)
        .where(
            OrderItem.product_id == product_id,
            OrderItem.is_reservation.is_(True),
            OrderItem.reservation_date == reservation_date,
            OrderItem.reservation_time == reservation_time,
            Order.status != OrderStatus.CANCELLED.value,
        )
    )
    if result.scalar_one() > 0:
      booked.append((product_id, reservation_date, reservation_time))
  return booked


async def get_booked_time_slots(
    session: AsyncSession, product_id: str, reservation_date: str
) -> List[str]:
  """Lists the booked HH:MM slots of a product on a date."""
  result = await session.execute(
      select(OrderItem.reservation_time)
      .join(Order, OrderItem.order_id == Order.id)
      .where(
          OrderItem.product_id == product_id,
          OrderItem.is_reservation.is_(True),
          OrderItem.reservation_date == reservation_date,
          Order.status != OrderStatus.CANCELLED.value,
      )
      .distinct()
      .order_by(OrderItem.reservation_time)
  )
  return [t for t in result.scalars().all() if t]


async def get_pending_orders_older_than(
    session: AsyncSession, cutoff: datetime.datetime, limit: int = 1000
) -> List[Order]:
  """Retrieves `pending` orders whose order date is before the cutoff."""
  result = await session.execute(
      select(Order)
      .where(
          Order.status == OrderStatus.PENDING.value,
          Order.order_date < cutoff,
      )
      .order_by(Order.order_date)
      .limit(limit)
  )
  return list(result.scalars().all())


async def get_refunds(session: AsyncSession, order_id: str) -> List[Refund]:
  """Retrieves the refunds recorded against an order."""
  result = await session.execute(
      select(Refund).where(Refund.order_id == order_id).order_by(
          Refund.created_at
      )
  )
  return list(result.scalars().all())


async def get_total_refunded(
    session: AsyncSession, order_id: str
) -> decimal.Decimal:
  """Sums the succeeded refunds of an order."""
  refunds = await get_refunds(session, order_id)
  return sum(
      (
          decimal.Decimal(str(r.amount))
          for r in refunds
          if r.status == RefundStatus.SUCCEEDED.value
      ),
      decimal.Decimal("0"),
  )


async def save_refund(
    session: AsyncSession,
    order_id: str,
    refund_id: str,
    amount: decimal.Decimal,
    status: str,
    payment_intent_id: Optional[str] = None,
    currency: str = "usd",
    reason: Optional[str] = None,
    refunded_by: Optional[str] = None,
) -> Refund:
  """Records a refund against an order."""
  refund = Refund(
      id=str(uuid.uuid4()),
      order_id=order_id,
      payment_intent_id=payment_intent_id,
      refund_id=refund_id,
      amount=amount,
      currency=currency,
      reason=reason,
      status=status,
      refunded_by=refunded_by,
  )
  session.add(refund)
  return refund


async def get_stock_out_quantities(
    session: AsyncSession, order_id: str
) -> Dict[str, int]:
  """Sums stock-out quantities linked to an order, keyed by product ID."""
  result = await session.execute(
      select(StockOperation.product_id, func.sum(StockOperation.quantity))
      .where(
          StockOperation.order_id == order_id,
          StockOperation.type == StockOperationType.OUT.value,
      )
      .group_by(StockOperation.product_id)
  )
  return {product_id: int(total or 0) for product_id, total in result.all()}


async def list_stock_operations(
    session: AsyncSession,
    product_id: Optional[str] = None,
    operation_type: Optional[str] = None,
    performed_by: Optional[str] = None,
    order_id: Optional[str] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> Tuple[List[StockOperation], int]:
  """Lists stock operations, newest first, with the unpaginated total."""
  conditions = []
  if product_id:
    conditions.append(StockOperation.product_id == product_id)
  if operation_type:
    conditions.append(StockOperation.type == operation_type)
  if performed_by:
    conditions.append(StockOperation.performed_by == performed_by)
  if order_id:
    conditions.append(StockOperation.order_id == order_id)

  total_result = await session.execute(
      select(func.count(StockOperation.id)).where(*conditions)
  )
  total = total_result.scalar_one()

  stmt = (
      select(StockOperation)
      .where(*conditions)
      .order_by(StockOperation.performed_at.desc(), StockOperation.id)
  )
  if limit is not None:
    stmt = stmt.limit(limit)
  if offset:
    stmt = stmt.offset(offset)
  result = await session.execute(stmt)
  return list(result.scalars().all()), total


async def log_activity(
    session: AsyncSession,
    log_type: str,
    message: str,
    user_name: str = "System",
    details: Optional[Dict[str, Any]] = None,
) -> None:
  """Adds an audit entry to the activity log."""
  session.add(
      ActivityLog(
          type=log_type,
          message=message,
          user_name=user_name,
          details=details,
      )
  )


async def get_activity_logs(
    session: AsyncSession, log_type: Optional[str] = None
) -> List[ActivityLog]:
  """Retrieves activity log entries, oldest first."""
  stmt = select(ActivityLog).order_by(ActivityLog.id)
  if log_type:
    stmt = stmt.where(ActivityLog.type == log_type)
  result = await session.execute(stmt)
  return list(result.scalars().all())
