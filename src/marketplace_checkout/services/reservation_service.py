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

"""Reservation time slot conflicts and availability.

A reservation line books one (product, date, time) slot. A slot is taken when
any order that is not cancelled holds a reservation item for it, staged orders
included. Conflict detection runs inside the caller's transaction so that the
check and the insert of the new order items are serialized.
"""

import datetime
import logging
from typing import Callable, Iterable, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_checkout import db
from marketplace_checkout.exceptions import InvalidRequestError
from marketplace_checkout.exceptions import ReservationConflictError
from marketplace_checkout.models import AvailableTimeSlotsResponse
from marketplace_checkout.models import TimeSlot
from marketplace_checkout.models import TimeSlotCheckResponse
from marketplace_checkout.services.checkout_items import is_valid_reservation_date
from marketplace_checkout.services.checkout_items import normalize_reservation_time
from marketplace_checkout.services.checkout_items import SellerGroup

logger = logging.getLogger(__name__)

Slot = Tuple[str, str, str]

# Hourly slots from 09:00 to 18:00.
TIME_SLOTS = tuple(f"{hour:02d}:00" for hour in range(9, 19))


def reservation_slots(groups: Iterable[SellerGroup]) -> List[Slot]:
  """Extracts the (product, date, time) slots booked by a set of groups."""
  return [
      (line.product_id, line.reservation_date, line.reservation_time)
      for group in groups
      for line in group.items
      if line.is_reservation
  ]


class ReservationService:
  """Detects reservation conflicts and reports slot availability."""

  def __init__(
      self,
      transactions_session: AsyncSession,
      clock: Optional[Callable[[], datetime.datetime]] = None,
  ):
    self.session = transactions_session
    self.clock = clock or db.utcnow

  async def find_conflicts(self, slots: List[Slot]) -> List[Slot]:
    """Returns every requested slot that is already taken.

    A slot requested twice in the same list conflicts with itself.

    Args:
      slots: The requested (product_id, date, time) slots.

    Returns:
      The conflicting slots, each listed once, in request order.
    """
    conflicts: List[Slot] = []
    seen = set()
    for slot in slots:
      if slot in seen and slot not in conflicts:
        conflicts.append(slot)
      seen.add(slot)

    for slot in await db.find_booked_reservations(self.session, list(seen)):
      if slot not in conflicts:
        conflicts.append(slot)

    order = {slot: i for i, slot in reversed(list(enumerate(slots)))}
    conflicts.sort(key=lambda s: order[s])
    return conflicts

  async def ensure_available(self, slots: List[Slot]) -> None:
    """Raises `ReservationConflictError` if any requested slot is taken."""
    if not slots:
      return
    conflicts = await self.find_conflicts(slots)
    if conflicts:
      logger.info("Reservation conflict on slots %s", conflicts)
      raise ReservationConflictError(conflicts)

  def _validate_date(self, reservation_date: str) -> str:
    if not is_valid_reservation_date(reservation_date):
      raise InvalidRequestError("Invalid date format. Expected YYYY-MM-DD")
    reservation_date = reservation_date.strip()
    try:
      parsed = datetime.date.fromisoformat(reservation_date)
    except ValueError as e:
      raise InvalidRequestError(
          "Invalid date format. Expected YYYY-MM-DD"
      ) from e
    if parsed < self.clock().date():
      raise InvalidRequestError("Cannot book reservations for past dates")
    return reservation_date

  async def available_time_slots(
      self, product_id: str, reservation_date: str
  ) -> AvailableTimeSlotsResponse:
    """Lists the day's hourly slots with their availability."""
    if not product_id:
      raise InvalidRequestError("Product ID is required")
    reservation_date = self._validate_date(reservation_date or "")
    try:
      booked = await db.get_booked_time_slots(
          self.session, product_id, reservation_date
      )
    finally:
      await self.session.rollback()

    return AvailableTimeSlotsResponse(
        product_id=product_id,
        date=reservation_date,
        time_slots=[
            TimeSlot(time=slot, available=slot not in booked)
            for slot in TIME_SLOTS
        ],
        booked_time_slots=booked,
    )

  async def check_time_slot(
      self, product_id: str, reservation_date: str, reservation_time: str
  ) -> TimeSlotCheckResponse:
    """Checks whether one slot can still be booked."""
    if not product_id:
      raise InvalidRequestError("Product ID is required")
    normalized_time = normalize_reservation_time(reservation_time)
    if normalized_time is None:
      raise InvalidRequestError("Invalid time slot format. Expected HH:mm")
    reservation_date = self._validate_date(reservation_date or "")
    try:
      booked = await db.find_booked_reservations(
          self.session, [(product_id, reservation_date, normalized_time)]
      )
    finally:
      await self.session.rollback()

    available = not booked
    return TimeSlotCheckResponse(
        product_id=product_id,
        date=reservation_date,
        time=normalized_time,
        available=available,
        message=(
            "Time slot is available."
            if available
            else "This time slot is no longer available. Please select"
            " another time slot."
        ),
    )
