from paani.models.customer import Base, Customer
from paani.models.recurring import RecurrenceRule
from paani.models.delivery import DeliveryRequest

__all__ = ["Base", "Customer", "RecurrenceRule", "DeliveryRequest"]
