# 用户与账本
from .user import User
from .balance_log import BalanceLog
# 套餐与订单
from .plan import Plan
from .billing_order import BillingOrder
# 优惠券与充值卡密
from .coupon import Coupon
from .recharge_code import RechargeCode
# 邀请
from .invite_record import InviteRecord
# 导入基础模型
from .base import *
