#!/usr/bin/env python3
"""
Lightweight helper to query the router debug endpoint for routing decisions.

Run as:
  python3 scripts/debug_router_decisions.py

This posts each question to POST /debug/router_decision and prints a compact table:
  prompt_id | domain | complexity | backend/model | profile | plan

Nothing is sent to a completion backend, so it is safe to run against any router.
"""
import os
from typing import Any, Dict, List

import httpx

BASE = os.getenv("ROUTER_BASE", "http://localhost:8082")
URL = BASE.rstrip("/") + "/debug/router_decision"
API_KEY = os.getenv("ROUTER_API_KEY", "")


PROMPTS = [
    # id, tier, mode, question
    ("P1-VAT", "free", "standard", "What is VAT?"),
    ("P2-CALC", "payg", "calculation", "Calculate the depreciation on a $50,000 machine over 5 years."),
    ("P3-RSRCH", "plus", "deep-research", "What precedent exists for the latest ruling on crypto staking income?"),
    ("P4-DOC", "professional", "standard", "Review the attached invoice and extract the totals."),
    ("P5-AUDIT", "enterprise", "audit-plan",
     "Plan the audit of revenue and internal control over financial reporting for a multinational group "
     "with subsidiaries in the UK and Canada, including materiality and risk assessment for impairment of goodwill."),
    ("P6-DEEP", "professional", "standard", "Should I elect S-corp status? Compare the tax strategy options for my LLC."),
    ("P7-GAAP", "payg", "standard", "Difference between GAAP and IFRS lease accounting?"),
]


def pretty_row(cols: List[str], widths: List[int]) -> str:
    out = []
    for i, c in enumerate(cols):
        w = widths[i]
        s = c if c is not None else ""
        if len(s) > w:
            s = s[: w - 3] + "..."
        out.append(s.ljust(w))
    return " | ".join(out)


def summarize_plan(resp: Dict[str, Any]) -> str:
    plan = resp.get("plan") or []
    if not plan:
        return "-"
    parts = []
    for c in plan:
        mark = "" if c.get("healthy") else "!"
        parts.append(f"{mark}{c.get('backend')}/{c.get('model')}")
    return ",".join(parts)


def run():
    widths = [9, 18, 10, 40, 16, 60]
    header = pretty_row(["prompt_id", "domain", "complexity", "backend/model", "profile", "plan"], widths)
    print(header)
    print("-" * len(header))

    headers = {"X-API-Key": API_KEY} if API_KEY else {}
    with httpx.Client(timeout=10) as client:
        for pid, tier, mode, question in PROMPTS:
            payload = {"query": question, "tier": tier, "mode": mode}
            try:
                r = client.post(URL, json=payload, headers=headers)
            except httpx.HTTPError as e:
                print(pretty_row([pid, "ERR", "-", "-", "-", str(e)], widths))
                continue

            if r.status_code != 200:
                print(pretty_row([pid, "ERR", "-", str(r.status_code), "-", r.text[:60]], widths))
                continue

            data = r.json()
            c = data.get("classification") or {}
            routing = data.get("routing") or {}
            selected = f"{routing.get('preferred_backend', '-')}/{routing.get('primary_model', '-')}"
            profile = (data.get("profile") or {}).get("kind", "-")
            print(pretty_row([pid, c.get("domain", "-"), c.get("complexity", "-"), selected, profile,
                              summarize_plan(data)], widths))


if __name__ == "__main__":
    print(f"Querying router debug endpoint: {URL}")
    run()
