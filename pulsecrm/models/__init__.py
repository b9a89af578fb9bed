from pulsecrm.models.user import User
from pulsecrm.models.customer import Customer
from pulsecrm.models.order import Order
from pulsecrm.models.segment import Segment
from pulsecrm.models.campaign import Campaign, CommunicationLog
