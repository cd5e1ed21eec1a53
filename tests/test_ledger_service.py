import unittest

from billing_fixtures import create_user, reload_user, setup_database
from core.errors import InsufficientFundsError, NotFoundError, ValidationError
from core.ledger_service import (
    REASON_ADMIN_ADJUST,
    REASON_ORDER_PAY,
    REASON_TOPUP,
    adjust_balance,
    credit,
    debit,
    format_cents,
    get_balance,
    list_balance_logs,
    parse_yuan,
)
from core.models.balance_log import BalanceLog
from core.models.user import User


class LedgerServiceTestCase(unittest.TestCase):
    def setUp(self):
        self.session = setup_database()
        self.user = create_user(self.session, balance_cents=5000)
        self.username = self.user.username

    def tearDown(self):
        self.session.rollback()
        self.session.query(BalanceLog).filter(BalanceLog.owner_id == self.username).delete()
        self.session.query(User).filter(User.username == self.username).delete()
        self.session.commit()
        self.session.close()

    def test_credit_and_debit_write_logs(self):
        self.assertEqual(credit(self.session, self.username, 1500, REASON_TOPUP, ref_id="T1"), 6500)
        self.assertEqual(debit(self.session, self.username, 2000, REASON_ORDER_PAY, ref_id="O1"), 4500)
        self.session.commit()

        self.assertEqual(get_balance(self.session, self.username), 4500)
        logs = list_balance_logs(self.session, self.username)
        self.assertEqual([x["change_cents"] for x in logs], [-2000, 1500])
        self.assertEqual([x["balance_after_cents"] for x in logs], [4500, 6500])
        self.assertEqual(logs[0]["ref_id"], "O1")

    def test_debit_rejects_whole_amount_when_insufficient(self):
        with self.assertRaises(InsufficientFundsError) as ctx:
            debit(self.session, self.username, 5001, REASON_ORDER_PAY)
        self.session.rollback()

        self.assertEqual(ctx.exception.balance_cents, 5000)
        self.assertEqual(ctx.exception.required_cents, 5001)
        self.assertEqual(reload_user(self.session, self.username).balance_cents, 5000)
        self.assertEqual(list_balance_logs(self.session, self.username), [])

    def test_balance_never_goes_negative(self):
        debit(self.session, self.username, 3000, REASON_ORDER_PAY)
        self.session.commit()
        with self.assertRaises(InsufficientFundsError):
            debit(self.session, self.username, 3000, REASON_ORDER_PAY)
        self.session.rollback()
        debit(self.session, self.username, 2000, REASON_ORDER_PAY)
        self.session.commit()
        self.assertEqual(get_balance(self.session, self.username), 0)

    def test_zero_amount_is_noop(self):
        self.assertEqual(debit(self.session, self.username, 0, REASON_ORDER_PAY), 5000)
        self.assertEqual(credit(self.session, self.username, 0, REASON_TOPUP), 5000)
        self.session.commit()
        self.assertEqual(list_balance_logs(self.session, self.username), [])

    def test_negative_amount_rejected(self):
        with self.assertRaises(ValidationError):
            credit(self.session, self.username, -1, REASON_TOPUP)
        with self.assertRaises(ValidationError):
            debit(self.session, self.username, -1, REASON_ORDER_PAY)

    def test_unknown_user(self):
        with self.assertRaises(NotFoundError):
            credit(self.session, "nobody_here", 100, REASON_TOPUP)
        with self.assertRaises(NotFoundError):
            get_balance(self.session, "nobody_here")

    def test_adjust_balance_commits_and_rolls_back(self):
        self.assertEqual(adjust_balance(self.session, self.username, 250, remark="补偿"), 5250)
        with self.assertRaises(InsufficientFundsError):
            adjust_balance(self.session, self.username, -9999)
        with self.assertRaises(ValidationError):
            adjust_balance(self.session, self.username, 0)

        self.assertEqual(reload_user(self.session, self.username).balance_cents, 5250)
        logs = list_balance_logs(self.session, self.username)
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]["reason"], REASON_ADMIN_ADJUST)

    def test_parse_yuan(self):
        self.assertEqual(parse_yuan("12.5"), 1250)
        self.assertEqual(parse_yuan("0.01"), 1)
        self.assertEqual(parse_yuan(100), 10000)
        for bad in ("0", "-1", "abc", "1.234", "", "NaN"):
            with self.assertRaises(ValidationError):
                parse_yuan(bad)

    def test_format_cents(self):
        self.assertEqual(format_cents(8000), "¥80.00")
        self.assertEqual(format_cents(None), "¥0.00")


if __name__ == "__main__":
    unittest.main()
