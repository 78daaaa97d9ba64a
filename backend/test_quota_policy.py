import unittest

from errors import QuotaExceededError
from quota_policy import (
    FREE_DAILY_QUESTION_LIMIT,
    can_ask_questions,
    daily_question_limit,
    ensure_can_ask_questions,
    remaining_questions,
)
from testing_support import make_account


class TestQuotaPolicy(unittest.TestCase):
    def test_free_plan_limit_is_ten_by_default(self):
        self.assertEqual(FREE_DAILY_QUESTION_LIMIT, 10)
        self.assertEqual(daily_question_limit(make_account()), 10)

    def test_free_plan_allows_until_limit(self):
        self.assertTrue(can_ask_questions(make_account(questions_today=9)))
        self.assertFalse(can_ask_questions(make_account(questions_today=10)))

    def test_paid_plans_are_unlimited(self):
        for plan in ("pro", "school"):
            account = make_account(plan=plan, questions_today=500)
            self.assertIsNone(daily_question_limit(account))
            self.assertIsNone(remaining_questions(account))
            self.assertTrue(can_ask_questions(account))

    def test_remaining_questions_can_go_negative(self):
        self.assertEqual(remaining_questions(make_account(questions_today=3)), 7)
        self.assertEqual(remaining_questions(make_account(questions_today=12)), -2)

    def test_exceeded_error_carries_limit_and_usage(self):
        with self.assertRaises(QuotaExceededError) as ctx:
            ensure_can_ask_questions(make_account(questions_today=10))
        self.assertEqual(ctx.exception.status_code, 403)
        body = ctx.exception.to_response()
        self.assertEqual(body["limit"], 10)
        self.assertEqual(body["used"], 10)
        self.assertEqual(body["error"], "daily_limit_reached")


if __name__ == "__main__":
    unittest.main()
