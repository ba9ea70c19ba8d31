from meatshop.models.user import Address, User
from meatshop.models.product import Product
from meatshop.models.inventory import StockItem, StockMovement
from meatshop.models.delivery import DeliveryZone
from meatshop.models.discount import DiscountCode
from meatshop.models.order import Order, OrderItem, OrderStatusHistory
from meatshop.models.payment import Payment, PaymentRefund
from meatshop.models.notification import Notification
