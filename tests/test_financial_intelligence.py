"""
Tests for financial intelligence: revenue metrics, forecast, profitability,
service performance, alerts and the executive summary.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from mssp.models import Contract, ContractStatus, FinancialTransaction
from mssp.services import financial_intelligence as fi

MARCH_START = datetime(2026, 3, 1)
MARCH_END = datetime(2026, 3, 31)


@pytest.fixture
def ledger(db, sample_data):
    """
    March 2026: 10k monthly retainer + 2k incident response (Acme),
    4k recurring EDR fee (Globex) and a 5k expense.
    February: one 8k monthly retainer (Acme).
    """
    acme = sample_data["clients"]["acme"].id
    globex = sample_data["clients"]["globex"].id
    db.add_all([
        FinancialTransaction(client_id=acme, transaction_type="revenue", amount=10000,
                             description="Monthly SOC retainer", transaction_date=datetime(2026, 3, 5)),
        FinancialTransaction(client_id=acme, transaction_type="revenue", amount=2000,
                             description="Incident response", transaction_date=datetime(2026, 3, 10)),
        FinancialTransaction(client_id=globex, transaction_type="revenue", amount=4000,
                             description="Recurring EDR fee", transaction_date=datetime(2026, 3, 12)),
        FinancialTransaction(transaction_type="expense", amount=5000,
                             description="Monthly SIEM licensing", transaction_date=datetime(2026, 3, 15)),
        FinancialTransaction(client_id=acme, transaction_type="revenue", amount=8000,
                             description="Monthly SOC retainer", transaction_date=datetime(2026, 2, 5)),
    ])
    db.commit()
    return sample_data


class TestRevenueMetrics:
    def test_period_totals(self, db, ledger) -> None:
        metrics = fi.revenue_metrics(db, MARCH_START, MARCH_END)
        assert metrics["totalRevenue"] == 16000.0
        assert metrics["recurringRevenue"] == 14000.0
        assert metrics["oneTimeRevenue"] == 2000.0
        assert metrics["growthRate"] == pytest.approx(100.0)
        assert metrics["averageContractValue"] == 85000.0
        assert metrics["customerLifetimeValue"] == 14000.0 * 24
        assert metrics["churnRate"] == 0.0

    def test_churn_counts_contracts_ended_in_period(self, db, ledger) -> None:
        db.add(Contract(client_id=ledger["clients"]["globex"].id, name="Old MDR", start_date=datetime(2025, 3, 20),
                        end_date=datetime(2026, 3, 20), total_value=9000, status=ContractStatus.TERMINATED))
        db.commit()
        metrics = fi.revenue_metrics(db, MARCH_START, MARCH_END)
        assert metrics["churnRate"] == pytest.approx(100 / 3)

    def test_no_previous_revenue_means_no_growth(self, db, ledger) -> None:
        metrics = fi.revenue_metrics(db, datetime(2026, 2, 1), datetime(2026, 2, 28))
        assert metrics["totalRevenue"] == 8000.0
        assert metrics["growthRate"] == 0.0


class TestCashFlowForecast:
    def test_twelve_months_from_active_scopes(self, db, sample_data) -> None:
        now = datetime.utcnow()
        forecast = fi.cash_flow_forecast(db, now)
        assert len(forecast) == 12
        first = forecast[0]
        assert first["month"] == now.strftime("%Y-%m")
        assert first["projectedRevenue"] == 20000.0
        assert first["projectedExpenses"] == pytest.approx(13000.0)
        assert first["netCashFlow"] == pytest.approx(7000.0)
        assert [m["confidence"] for m in forecast[:3]] == [0.95, 0.9, 0.85]
        assert forecast[-1]["confidence"] == 0.5

    def test_revenue_stops_after_contract_end(self, db, sample_data) -> None:
        now = datetime.utcnow()
        sample_data["contracts"]["acme"].end_date = now + timedelta(days=45)
        db.commit()
        revenue = [m["projectedRevenue"] for m in fi.cash_flow_forecast(db, now, months=3)]
        assert revenue == [20000.0, 20000.0, 0.0]

    def test_month_end_dates_clamp(self, db) -> None:
        months = [m["month"] for m in fi.cash_flow_forecast(db, datetime(2026, 1, 31), months=3)]
        assert months == ["2026-01", "2026-02", "2026-03"]


class TestProfitabilityAndPerformance:
    def test_client_profitability(self, db, ledger) -> None:
        rows = {r["clientName"]: r for r in fi.client_profitability(db)}
        assert set(rows) == {"Acme Corp", "Globex"}
        acme = rows["Acme Corp"]
        assert acme["totalRevenue"] == 20000.0
        assert acme["totalCosts"] == pytest.approx(12000.0)
        assert acme["profitMargin"] == pytest.approx(40.0)
        assert acme["profitability"] == "highly_profitable"
        assert acme["riskLevel"] == "low"

    def test_clients_without_revenue_are_skipped(self, db, sample_data) -> None:
        assert fi.client_profitability(db) == []

    @pytest.mark.parametrize("margin, tier", [
        (31, ("highly_profitable", "low")),
        (20, ("profitable", "low")),
        (5, ("break_even", "medium")),
        (0, ("loss_making", "high")),
    ])
    def test_profitability_tiers(self, margin, tier) -> None:
        assert fi._profitability_tier(margin) == tier

    def test_service_performance(self, db, sample_data) -> None:
        rows = fi.service_performance(db)
        # EDR's only scope is pending
        assert len(rows) == 1
        siem = rows[0]
        assert siem["serviceName"] == "Managed SIEM"
        assert siem["totalRevenue"] == 240000.0
        assert siem["activeContracts"] == 2
        assert siem["averageMargin"] == 40
        assert siem["demandScore"] == pytest.approx(4.8)
        assert siem["growthTrend"] == "declining"

    def test_category_margin(self, db, sample_data) -> None:
        sample_data["services"]["siem"].category = "Monitoring"
        db.commit()
        assert fi.service_performance(db)[0]["averageMargin"] == 45


class TestFinancialAlerts:
    def test_alerts_sorted_by_severity(self, db, sample_data) -> None:
        now = datetime.utcnow()
        globex = sample_data["clients"]["globex"].id
        db.add_all([
            FinancialTransaction(client_id=globex, transaction_type="revenue", amount=1500, status="pending",
                                 transaction_date=now - timedelta(days=45)),
            FinancialTransaction(client_id=globex, transaction_type="revenue", amount=900, status="pending",
                                 transaction_date=now - timedelta(days=90)),
            FinancialTransaction(client_id=globex, transaction_type="revenue", amount=700, status="completed",
                                 transaction_date=now - timedelta(days=90)),
        ])
        db.commit()

        alerts = fi.financial_alerts(db, now)
        assert [(a["type"], a["severity"]) for a in alerts] == [
            ("payment_overdue", "critical"),
            ("low_cash_flow", "critical"),
            ("payment_overdue", "high"),
            ("contract_at_risk", "high"),
        ]
        assert alerts[2]["description"] == "Payment of $1,500.00 is 45 days overdue"
        assert alerts[2]["title"] == "Payment Overdue: Globex"

        at_risk = alerts[3]
        assert at_risk["contractId"] == sample_data["contracts"]["globex"].id
        assert at_risk["clientId"] == globex
        assert at_risk["impactAmount"] == 50000.0

    def test_healthy_forecast_raises_no_cash_flow_alert(self, db, sample_data) -> None:
        forecast = [{"netCashFlow": 80000.0}] * 12
        alerts = fi.financial_alerts(db, forecast=forecast)
        assert [a["type"] for a in alerts] == ["contract_at_risk"]

    def test_few_low_months_is_high(self, db) -> None:
        forecast = [{"netCashFlow": 10000.0}, {"netCashFlow": -2000.0}] + [{"netCashFlow": 90000.0}] * 10
        alerts = fi.financial_alerts(db, forecast=forecast)
        assert alerts == [{
            "type": "low_cash_flow",
            "severity": "high",
            "title": "Low Cash Flow Projected",
            "description": "2 months with cash flow below $50K threshold",
            "actionRequired": "Review expenses and accelerate collections",
            "impactAmount": 2000.0,
        }]


class TestExecutiveSummary:
    @pytest.mark.parametrize("period, start", [
        ("month", datetime(2026, 5, 1)),
        ("quarter", datetime(2026, 4, 1)),
        ("year", datetime(2026, 1, 1)),
    ])
    def test_period_start(self, period, start) -> None:
        assert fi.period_start(period, datetime(2026, 5, 15, 9, 30)) == start

    def test_summary_shape(self, db, ledger) -> None:
        summary = fi.executive_summary(db, "quarter", now=datetime(2026, 3, 31))
        assert summary["period"] == "quarter"
        assert summary["revenue"]["totalRevenue"] == 24000.0
        assert len(summary["forecast"]) == 6
        assert len(summary["alerts"]) <= 5
        kpis = {k["name"]: k for k in summary["kpis"]}
        assert kpis["Client Profitability"]["value"] == 2
        assert kpis["Client Profitability"]["target"] == pytest.approx(1.2)
        assert kpis["Customer Churn Rate"]["trend"] == "up"

    def test_unknown_period(self, db) -> None:
        with pytest.raises(ValueError):
            fi.executive_summary(db, "decade")


class TestFinancialApi:
    def test_requires_manager(self, client, basic_user, auth_headers) -> None:
        assert client.get("/api/financial/alerts", headers=auth_headers(basic_user)).status_code == 403

    def test_record_and_list_transactions(self, client, sample_data, manager, auth_headers) -> None:
        headers = auth_headers(manager)
        acme = sample_data["clients"]["acme"].id
        resp = client.post("/api/financial/transactions", headers=headers, json={
            "type": "revenue", "amount": 1200, "description": "Monthly EDR", "clientId": acme,
            "transactionDate": "2026-03-02T00:00:00",
        })
        assert resp.status_code == 200
        assert resp.json()["amount"] == 1200.0

        listed = client.get("/api/financial/transactions", params={"clientId": acme}, headers=headers).json()
        assert [t["description"] for t in listed] == ["Monthly EDR"]

        bad = client.post("/api/financial/transactions", headers=headers, json={"type": "refund", "amount": 1})
        assert bad.status_code == 400

    def test_analytics_endpoints(self, client, ledger, manager, auth_headers) -> None:
        headers = auth_headers(manager)
        metrics = client.get("/api/financial/revenue-metrics", headers=headers,
                             params={"startDate": "2026-03-01T00:00:00", "endDate": "2026-03-31T00:00:00"})
        assert metrics.json()["totalRevenue"] == 16000.0
        assert client.get("/api/financial/revenue-metrics", headers=headers,
                          params={"startDate": "2026-04-01T00:00:00",
                                  "endDate": "2026-03-01T00:00:00"}).status_code == 400

        assert len(client.get("/api/financial/cash-flow-forecast", headers=headers).json()) == 12
        assert len(client.get("/api/financial/client-profitability", headers=headers).json()) == 2
        assert client.get("/api/financial/service-performance", headers=headers).status_code == 200
        assert client.get("/api/financial/executive-summary", headers=headers).json()["period"] == "month"
        assert client.get("/api/financial/executive-summary", params={"period": "decade"},
                          headers=headers).status_code == 400
