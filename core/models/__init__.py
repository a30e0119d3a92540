# 用户投影模型
from .user import User
# 一次性支付订单
from .billing_order import BillingOrder
# 周期订阅
from .subscription import Subscription
# 回调幂等标记
from .payment_event import PaymentEvent
# 导入基础模型
from .base import *
