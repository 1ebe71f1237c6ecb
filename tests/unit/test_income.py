"""
Unit tests for the income split.
"""

from datetime import datetime

from smsledger.core.income import IncomeFilter, IncomeParser, SmsType

SALARY = "[KB]홍길동님 02/25 급여 2,500,000원 입금"


class TestIncomeFilter:
    def setup_method(self):
        self.filter = IncomeFilter()

    def test_salary_is_income(self):
        assert self.filter.classify(SALARY) is SmsType.INCOME
        assert self.filter.is_income(SALARY)

    def test_payment(self):
        assert self.filter.classify("[KB]02/05 14:30 스타벅스 11,940원 승인") is SmsType.PAYMENT

    def test_cancellation_returns_money(self):
        assert self.filter.classify("[신한카드] 스타벅스 11,940원 승인취소") is SmsType.INCOME

    def test_scheduled_debit_is_skipped(self):
        assert self.filter.classify("[KB] 보험료 납부 50,000원 입금 필요") is SmsType.SKIP

    def test_no_institution(self):
        assert self.filter.classify("엄마가 10,000원 입금했어") is SmsType.SKIP

    def test_no_amount(self):
        assert self.filter.classify("[KB] 급여 입금 완료") is SmsType.SKIP

    def test_user_keywords(self):
        income_filter = IncomeFilter(["급여"])
        assert income_filter.classify(SALARY) is SmsType.SKIP


class TestIncomeParser:
    def setup_method(self):
        self.parser = IncomeParser()

    def test_salary(self):
        ts = int(datetime(2024, 3, 1, 9, 0).timestamp() * 1000)
        result = self.parser.parse(SALARY, ts)
        assert result.amount == 2500000
        assert result.income_type == "급여"
        assert result.date_time == "2024-02-25 09:00"

    def test_sender_from_phrase(self):
        body = "[카카오뱅크] 홍길동님으로부터 50,000원 송금"
        assert IncomeParser.extract_source(body) == "홍길동"
        assert IncomeParser.extract_income_type(body) == "송금"

    def test_sender_after_deposit(self):
        assert IncomeParser.extract_source("[KB] 02/05 50,000원 입금 홍길동") == "홍길동"

    def test_default_type(self):
        assert IncomeParser.extract_income_type("[KB] 50,000원 입금") == "입금"

    def test_no_amount(self):
        assert self.parser.parse("[KB] 급여 입금", 0) is None

    def test_below_minimum(self):
        assert self.parser.parse("[KB] 50원 입금", 0) is None

    def test_to_dict(self):
        data = self.parser.parse(SALARY, 0).to_dict()
        assert data["amount"] == 2500000
        assert data["type"] == "급여"
