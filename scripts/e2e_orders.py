#!/usr/bin/env python3
"""
E2E smoke test for a running marketplace order service.

The target database must already hold the users and products below
(a buyer, a seller owning PRODUCT_ID, and an admin).

Run:
  python scripts/e2e_orders.py

Optional env:
  ORDER_BASE=http://localhost:8001
  BUYER_ID=1 SELLER_ID=3 ADMIN_ID=5
  PRODUCT_ID=10
  DEBUG=1
"""

from __future__ import annotations

import os
import sys
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests


# =========================
# Simple CLI UI (ANSI)
# =========================

class Style:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


def section_title(text: str):
    print(f"\n{Style.BLUE}{Style.BOLD}== {text} =={Style.RESET}")


def info(msg: str):
    print(f"{Style.CYAN}ℹ {msg}{Style.RESET}")


def ok(msg: str):
    print(f"{Style.GREEN}✔ {msg}{Style.RESET}")


def fail(msg: str):
    print(f"{Style.RED}✘ {msg}{Style.RESET}")


# =========================
# Config
# =========================

ORDER_BASE = os.getenv("ORDER_BASE", "http://localhost:8001")
BUYER_ID = os.getenv("BUYER_ID", "1")
SELLER_ID = os.getenv("SELLER_ID", "3")
ADMIN_ID = os.getenv("ADMIN_ID", "5")
PRODUCT_ID = int(os.getenv("PRODUCT_ID", "10"))
DEBUG = os.getenv("DEBUG", "0").strip() in {"1", "true", "True", "YES", "yes"}


def debug(msg: str):
    if DEBUG:
        print(f"{Style.GRAY}… {msg}{Style.RESET}")


@dataclass
class TestResult:
    name: str
    success: bool
    details: str = ""


# =========================
# HTTP helpers
# =========================

def http(method: str, path: str, user_id: Optional[str] = None, **kwargs) -> requests.Response:
    kwargs.setdefault("timeout", 8)
    if user_id is not None:
        kwargs.setdefault("headers", {})["X-User-Id"] = user_id
    debug(f"{method} {path} kwargs={kwargs}")
    return requests.request(method, ORDER_BASE + path, **kwargs)


def wait_for_health(timeout: int = 30) -> bool:
    start = time.time()
    while time.time() - start < timeout:
        try:
            if http("GET", "/health").status_code == 200:
                ok("order service is healthy.")
                return True
        except requests.exceptions.RequestException as e:
            debug(f"order service not ready: {e}")
        time.sleep(1)
    fail(f"order service did not become healthy in {timeout} seconds.")
    return False


def stock() -> int:
    return http("GET", f"/api/v1/stock/{PRODUCT_ID}").json()["stock_qty"]


def create_order(quantity: int) -> requests.Response:
    payload = {
        "items": [{"product_id": PRODUCT_ID, "quantity": quantity}],
        "shipping_address": "E2E Street 1",
        "payment_method": "card",
    }
    return http("POST", "/api/v1/orders", BUYER_ID, json=payload)


def check(name: str, condition: bool, details: str) -> TestResult:
    (ok if condition else fail)(f"{name}: {details}")
    return TestResult(name, condition, details)


# =========================
# Scenarios
# =========================

def scenario_reserve_and_cancel() -> List[TestResult]:
    section_title("Scenario 1 - Reserve then cancel")
    results: List[TestResult] = []
    before = stock()
    info(f"Stock before: {before}")

    resp = create_order(1)
    results.append(check("Create order", resp.status_code == 201, f"HTTP {resp.status_code}"))
    if resp.status_code != 201:
        return results
    order_id = resp.json()["order"]["id"]
    results.append(check("Stock reserved", stock() == before - 1, f"expected {before - 1}, got {stock()}"))

    resp = http("PATCH", f"/api/v1/orders/{order_id}/cancel", BUYER_ID)
    results.append(check("Cancel order", resp.status_code == 200, f"HTTP {resp.status_code}"))
    results.append(check("Stock restored", stock() == before, f"expected {before}, got {stock()}"))
    return results


def scenario_accept_and_ship() -> List[TestResult]:
    section_title("Scenario 2 - Accept and fulfil")
    results: List[TestResult] = []

    resp = create_order(1)
    if resp.status_code != 201:
        return [check("Create order", False, f"HTTP {resp.status_code}: {resp.text}")]
    order_id = resp.json()["order"]["id"]

    resp = http("PATCH", f"/api/v1/orders/{order_id}/accept", SELLER_ID)
    results.append(check("Accept", resp.status_code == 200, f"HTTP {resp.status_code}"))
    resp = http("PATCH", f"/api/v1/orders/{order_id}/accept", SELLER_ID)
    results.append(check("Second accept refused", resp.status_code == 409, f"HTTP {resp.status_code}"))

    for status in ("processing", "shipped"):
        resp = http("PATCH", f"/api/v1/orders/{order_id}/status", SELLER_ID, json={"status": status})
        results.append(check(f"Advance to {status}", resp.status_code == 200, f"HTTP {resp.status_code}"))

    resp = http("PATCH", f"/api/v1/orders/{order_id}/status", ADMIN_ID, json={"status": "rejected"})
    results.append(check("Shipped cannot be rejected", resp.status_code == 409, f"HTTP {resp.status_code}"))
    return results


def scenario_insufficient_stock() -> List[TestResult]:
    section_title("Scenario 3 - Insufficient stock")
    before = stock()
    resp = create_order(before + 5)
    body: Dict[str, Any] = resp.json() if resp.content else {}
    return [
        check("Order refused", resp.status_code == 409, f"HTTP {resp.status_code}, body={body}"),
        check("Stock unchanged", stock() == before, f"expected {before}, got {stock()}"),
    ]


def print_results(results: List[TestResult]):
    print(f"\n{Style.BOLD}================ TEST RESULTS ================ {Style.RESET}")
    passed = sum(1 for r in results if r.success)
    for r in results:
        color = Style.GREEN if r.success else Style.RED
        print(f"{color}{'✅' if r.success else '❌'} {r.name}{Style.RESET}")
        if r.details:
            print(f"    {Style.DIM}{r.details}{Style.RESET}")
    print(f"Total tests: {len(results)}  |  Passed: {passed}  |  Failed: {len(results) - passed}")
    return passed == len(results)


def main():
    if not wait_for_health():
        sys.exit(1)

    results: List[TestResult] = []
    results.extend(scenario_reserve_and_cancel())
    results.extend(scenario_accept_and_ship())
    results.extend(scenario_insufficient_stock())

    sys.exit(0 if print_results(results) else 1)


if __name__ == "__main__":
    main()
