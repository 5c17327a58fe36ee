"""Report calculations over parsed Xero records.

Pure functions: no I/O, the caller passes "today" explicitly. XeroService
fetches the records and hands them over.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Sequence

if TYPE_CHECKING:
    from bizmate.services.xero import XeroAccount, XeroInvoice, XeroOrganisation

WEEKDAY_NAMES = ["周一", "周二", "周三", "周四", "周五", "周六", "周日"]

COUNTRY_RULES = {
    "AU": {"region": "Australia", "gst_rate": "10%", "tax_office": "ATO", "currency": "AUD", "return_name": "BAS"},
    "NZ": {"region": "New Zealand", "gst_rate": "15%", "tax_office": "IRD", "currency": "NZD", "return_name": "GST"},
}

# Statuses that count towards a BAS/GST return
REPORTABLE_STATUSES = {"AUTHORISED", "PAID"}


def _money(value: float) -> float:
    return round(value, 2)


# =============================================================================
# Receivables
# =============================================================================


def summarize_receivables(invoices: Sequence["XeroInvoice"]) -> Dict[str, Any]:
    """Total outstanding AmountDue, overall and per customer."""
    by_customer: Dict[str, Dict[str, Any]] = {}
    total = 0.0
    for invoice in invoices:
        total += invoice.amount_due
        entry = by_customer.setdefault(invoice.customer_name, {"amount": 0.0, "count": 0})
        entry["amount"] = _money(entry["amount"] + invoice.amount_due)
        entry["count"] += 1

    return {
        "total_receivable": _money(total),
        "invoice_count": len(invoices),
        "by_customer": by_customer,
    }


# =============================================================================
# BAS / GST
# =============================================================================


@dataclass(frozen=True)
class QuarterPeriod:
    """Calendar quarter to date."""
    start: date
    end: date
    quarter: int
    year: int


def current_quarter(today: date) -> QuarterPeriod:
    """The calendar quarter containing ``today``, up to and including today."""
    quarter = (today.month - 1) // 3 + 1
    start = date(today.year, (quarter - 1) * 3 + 1, 1)
    return QuarterPeriod(start=start, end=today, quarter=quarter, year=today.year)


def bas_due_date(quarter: int, year: int, country_code: str = "AU") -> date:
    """Lodgement due date: the 28th of the month after the quarter.

    Australian Q4 (Oct-Dec) is due 28 February of the following year.
    """
    if quarter == 4:
        return date(year + 1, 2 if country_code == "AU" else 1, 28)
    return date(year, quarter * 3 + 1, 28)


def gst_advice(sales: float, purchases: float, net_gst: float, is_australia: bool) -> List[str]:
    advice = []
    if net_gst > 1000:
        advice.append("💡 本期应缴税款较高，建议检查是否有遗漏的进项税抵扣发票")
    if purchases < sales * 0.3:
        advice.append("💡 您的采购支出相对较低，如有计划采购设备或存货，可考虑在本期完成以抵扣GST")
    if is_australia:
        advice.append("📅 澳洲 BAS 通常每季度28日前申报，建议提前准备")
    else:
        advice.append("📅 新西兰 GST 申报周期根据注册类型不同，请确认您的具体截止日期")
    return advice


def _tax_totals(invoices: Sequence["XeroInvoice"]) -> tuple[float, float, int]:
    """(net amount, tax, count of taxed invoices) over reportable invoices."""
    amount = tax = 0.0
    taxed = 0
    for invoice in invoices:
        if invoice.status not in REPORTABLE_STATUSES:
            continue
        amount += invoice.sub_total
        tax += invoice.total_tax
        if invoice.total_tax > 0:
            taxed += 1
    return amount, tax, taxed


def build_bas_report(
    organisation: "XeroOrganisation",
    sales: Sequence["XeroInvoice"],
    purchases: Sequence["XeroInvoice"],
    period: QuarterPeriod,
    today: date,
) -> Dict[str, Any]:
    """GST collected vs. credits for the period, with deadline and advice."""
    country = (organisation.country_code or "AU").upper()
    is_australia = country == "AU"
    rules = COUNTRY_RULES.get(country)

    total_sales, gst_collected, sales_count = _tax_totals(sales)
    total_purchases, gst_credits, purchase_count = _tax_totals(purchases)
    net_gst = gst_collected - gst_credits

    due = bas_due_date(period.quarter, period.year, country)
    days_remaining = (due - today).days

    tax_office = rules["tax_office"] if rules else "税务局"
    return_name = rules["return_name"] if rules else "GST"
    if net_gst > 0:
        explanation = f"您需要向{tax_office}缴纳 ${net_gst:.2f} 的税款"
    else:
        explanation = f"您可以向{tax_office}申请退还 ${abs(net_gst):.2f}"

    return {
        "region": rules["region"] if rules else "Unknown",
        "country_code": country,
        "currency": organisation.base_currency or (rules["currency"] if rules else None),
        "gst_rate": rules["gst_rate"] if rules else "Unknown",
        "period": {
            "from": period.start.isoformat(),
            "to": period.end.isoformat(),
            "quarter": period.quarter,
            "year": period.year,
        },
        "sales": {
            "total_amount": _money(total_sales),
            "gst_collected": _money(gst_collected),
            "invoice_count": sales_count,
        },
        "purchases": {
            "total_amount": _money(total_purchases),
            "gst_credits": _money(gst_credits),
            "bill_count": purchase_count,
        },
        "gst_summary": {
            "gst_collected": _money(gst_collected),
            "gst_credits": _money(gst_credits),
            "net_gst_payable": _money(net_gst),
            "is_refund": net_gst < 0,
        },
        "deadline": {
            "due_date": due.isoformat(),
            "days_remaining": days_remaining,
            "is_urgent": 0 <= days_remaining <= 7,
            "is_overdue": days_remaining < 0,
        },
        "interpretation": {
            "title": "BAS 税务报告" if is_australia else "GST Return 报告",
            "summary": f"本{'季度' if is_australia else '期'}应缴{return_name} ${abs(net_gst):.2f}",
            "explanation": explanation,
            "advice": gst_advice(total_sales, total_purchases, net_gst, is_australia),
        },
    }


# =============================================================================
# Cash Flow
# =============================================================================


def _bucket_by_due_date(
    invoices: Sequence["XeroInvoice"],
    today: date,
    horizon: date,
) -> tuple[float, float, Dict[date, float]]:
    """(total due, due within horizon, amounts per day).

    Overdue amounts land on ``today``.
    """
    total = upcoming = 0.0
    by_date: Dict[date, float] = defaultdict(float)
    for invoice in invoices:
        total += invoice.amount_due
        if invoice.due_date is None or invoice.due_date > horizon:
            continue
        upcoming += invoice.amount_due
        by_date[max(invoice.due_date, today)] += invoice.amount_due
    return total, upcoming, by_date


def cashflow_insight(
    balance: float,
    receivables: float,
    payables: float,
    upcoming_in: float,
    upcoming_out: float,
) -> str:
    insights = []

    # Days the balance covers at the current monthly payables rate
    runway = balance / (payables / 30) if payables > 0 else 999
    if runway < 30:
        insights.append("现金流紧张，建议加快收款或控制支出")
    elif runway < 60:
        insights.append("现金流尚可，但建议保持关注")
    else:
        insights.append("现金流健康")

    if receivables > payables * 1.5:
        insights.append("应收账款偏高，存在坏账风险")
    if upcoming_out > upcoming_in and upcoming_out > balance * 0.5:
        insights.append("近期有大额支出，请提前准备资金")

    return "；".join(insights)


def build_cashflow_forecast(
    receivables: Sequence["XeroInvoice"],
    payables: Sequence["XeroInvoice"],
    bank_accounts: Sequence["XeroAccount"],
    days: int,
    today: date,
) -> Dict[str, Any]:
    """Running bank balance over the next ``days`` from unpaid invoices.

    An entry is recorded every seventh day and on every day with cash
    movement.
    """
    horizon = today + timedelta(days=days)
    total_receivables, upcoming_in, inflows = _bucket_by_due_date(receivables, today, horizon)
    total_payables, upcoming_out, outflows = _bucket_by_due_date(payables, today, horizon)

    bank_balances = [{"name": account.name, "balance": _money(account.balance)} for account in bank_accounts]
    bank_balance = sum(account.balance for account in bank_accounts)

    forecast = []
    running = bank_balance
    for offset in range(days + 1):
        day = today + timedelta(days=offset)
        inflow = inflows.get(day, 0.0)
        outflow = outflows.get(day, 0.0)
        running += inflow - outflow
        if offset % 7 == 0 or inflow > 0 or outflow > 0:
            forecast.append({
                "date": day.isoformat(),
                "day_of_week": WEEKDAY_NAMES[day.weekday()],
                "expected_inflow": _money(inflow),
                "expected_outflow": _money(outflow),
                "projected_balance": _money(running),
            })

    min_balance = min(entry["projected_balance"] for entry in forecast)

    risks = []
    if min_balance < 0:
        risks.append(f"⚠️ 预测期内可能出现负现金流，最低余额 ${min_balance:.2f}")
    elif min_balance < 5000:
        risks.append("⚠️ 现金流偏紧，建议关注应收账款回收")
    if total_payables > total_receivables + bank_balance:
        risks.append("⚠️ 应付账款总额超过可用资金，可能需要安排付款计划")

    advice = []
    if upcoming_in > 0:
        advice.append(f"💡 未来{days}天有 ${upcoming_in:.2f} 应收账款到期，建议提前跟进")
    if upcoming_out > 0:
        advice.append(f"💡 未来{days}天有 ${upcoming_out:.2f} 应付账款到期，请确保账户余额充足")
    if total_receivables > bank_balance * 2:
        advice.append("💡 应收账款较高，建议加强催收或考虑保理融资")

    if min_balance > 10000:
        health = "健康"
    elif min_balance > 0:
        health = "需关注"
    else:
        health = "紧张"

    net_flow = upcoming_in - upcoming_out
    direction = "净流入" if net_flow > 0 else "净流出"

    return {
        "forecast_period": {
            "days": days,
            "from": today.isoformat(),
            "to": horizon.isoformat(),
        },
        "current_position": {
            "bank_balance": _money(bank_balance),
            "bank_accounts": bank_balances,
            "total_receivables": _money(total_receivables),
            "total_payables": _money(total_payables),
            "net_position": _money(bank_balance + total_receivables - total_payables),
        },
        "upcoming_summary": {
            "expected_inflow": _money(upcoming_in),
            "expected_outflow": _money(upcoming_out),
            "net_flow": _money(net_flow),
        },
        "daily_forecast": forecast,
        "risks": risks,
        "advice": advice,
        "interpretation": {
            "summary": f"当前银行余额 ${bank_balance:.2f}，未来{days}天预计{direction} ${abs(net_flow):.2f}",
            "health_status": health,
            "key_insight": cashflow_insight(
                bank_balance, total_receivables, total_payables, upcoming_in, upcoming_out
            ),
        },
    }
