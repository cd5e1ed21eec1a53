import unittest

from billing_fixtures import create_test_plan, create_user, override_config, reload_user, setup_database
from core.billing_service import create_order, pay_order, refund_order
from core.errors import ValidationError
from core.invite_service import (
    INVITE_STATUS_PENDING,
    INVITE_STATUS_SETTLED,
    bind_invite_code,
    commission_rate,
    get_invite_info,
    list_invite_records,
    mask_email,
    new_invite_code,
)
from core.models.balance_log import BalanceLog
from core.models.billing_order import BillingOrder
from core.models.invite_record import InviteRecord
from core.models.plan import Plan
from core.models.user import User


class InviteServiceTestCase(unittest.TestCase):
    def setUp(self):
        self.session = setup_database()
        self.inviter = create_user(self.session)
        self.invitee = create_user(self.session, balance_cents=50000)
        self.usernames = [self.inviter.username, self.invitee.username]
        self.plan = create_test_plan(self.session, price_cents=9999)

    def tearDown(self):
        self.session.rollback()
        self.session.query(InviteRecord).filter(InviteRecord.inviter_id.in_(self.usernames)).delete(synchronize_session=False)
        self.session.query(BillingOrder).filter(BillingOrder.owner_id.in_(self.usernames)).delete(synchronize_session=False)
        self.session.query(BalanceLog).filter(BalanceLog.owner_id.in_(self.usernames)).delete(synchronize_session=False)
        self.session.query(Plan).filter(Plan.id == self.plan.id).delete()
        self.session.query(User).filter(User.username.in_(self.usernames)).delete(synchronize_session=False)
        self.session.commit()
        self.session.close()

    def _bind(self):
        record = bind_invite_code(self.session, self.invitee, self.inviter.invite_code)
        self.session.commit()
        return record

    def _buy(self):
        order = create_order(self.session, self.invitee.username, self.plan.id)
        pay_order(self.session, order.order_no, self.invitee.username, "balance")
        return order

    def test_bind_validation(self):
        self.assertIsNone(bind_invite_code(self.session, self.invitee, ""))
        with self.assertRaises(ValidationError):
            bind_invite_code(self.session, self.invitee, "no-such-code")
        with self.assertRaises(ValidationError):
            bind_invite_code(self.session, self.inviter, self.inviter.invite_code)

        record = self._bind()
        self.assertEqual(record.status, INVITE_STATUS_PENDING)
        self.assertEqual(reload_user(self.session, self.invitee.username).invited_by, self.inviter.username)

    def test_commission_settles_once(self):
        self._bind()
        with override_config({"invite.enabled": True, "invite.commission_rate": "0.1"}):
            first = self._buy()
            self._buy()

        self.assertEqual(reload_user(self.session, self.inviter.username).commission_cents, 999)
        record = self.session.query(InviteRecord).filter(InviteRecord.invitee_id == self.invitee.username).first()
        self.assertEqual(record.status, INVITE_STATUS_SETTLED)
        self.assertEqual(record.commission_cents, 999)
        self.assertEqual(record.order_no, first.order_no)

        info = get_invite_info(self.session, self.inviter.username)
        self.assertEqual(info["invite_count"], 1)
        self.assertEqual(info["pending_count"], 0)
        self.assertEqual(info["total_commission_cents"], 999)
        self.assertTrue(info["invite_link"].endswith(self.inviter.invite_code))

    def test_refund_keeps_commission(self):
        self._bind()
        with override_config({"invite.enabled": True, "invite.commission_rate": "0.1"}):
            order = self._buy()
            refund_order(self.session, order)
        self.assertEqual(reload_user(self.session, self.inviter.username).commission_cents, 999)

    def test_disabled_invite_leaves_record_pending(self):
        self._bind()
        with override_config({"invite.enabled": False}):
            self._buy()
        self.assertEqual(reload_user(self.session, self.inviter.username).commission_cents, 0)
        record = self.session.query(InviteRecord).filter(InviteRecord.invitee_id == self.invitee.username).first()
        self.assertEqual(record.status, INVITE_STATUS_PENDING)

    def test_records_mask_email(self):
        self._bind()
        page = list_invite_records(self.session, self.inviter.username)
        self.assertEqual(page["total"], 1)
        email = page["list"][0]["email"]
        self.assertIn("***", email)
        self.assertNotEqual(email, self.invitee.email)

    def test_helpers(self):
        self.assertEqual(mask_email("alice@example.com"), "al***e@example.com")
        self.assertEqual(mask_email("ab@example.com"), "a***@example.com")
        with override_config({"invite.commission_rate": "1.5"}):
            self.assertEqual(str(commission_rate()), "1")
        with override_config({"invite.commission_rate": "abc"}):
            self.assertEqual(str(commission_rate()), "0")
        code = new_invite_code(self.session)
        self.assertEqual(len(code), 8)


if __name__ == "__main__":
    unittest.main()
