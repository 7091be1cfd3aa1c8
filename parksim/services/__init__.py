"""
Parking services.

Contains:
- valet: park/retrieve through valet stands with queues
- delivery: bring a parked vehicle to the player
- impound: impound lot fees and release
- violations: parking tickets
- reserved: VIP, job, business and rental spots
"""

from parksim.services.delivery import DeliveryService
from parksim.services.impound import ImpoundService
from parksim.services.reserved import ReservedService
from parksim.services.valet import ValetService
from parksim.services.violations import ViolationService

__all__ = [
    "DeliveryService",
    "ImpoundService",
    "ReservedService",
    "ValetService",
    "ViolationService",
]
