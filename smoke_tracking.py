"""
Manual smoke check against a running API: health, carrier resolution,
tracking state for one AWB and a non-live reconciliation run.

Usage: python smoke_tracking.py [AWB]   (BASE_URL env, default http://127.0.0.1:8000)
"""
import os
import sys

import requests

BASE_URL = os.getenv("BASE_URL", "http://127.0.0.1:8000").rstrip("/")
AWB = sys.argv[1] if len(sys.argv) > 1 else None

print("=== Health ===")
response = requests.get(f"{BASE_URL}/health", timeout=10)
print(response.status_code, response.json())

print("\n=== Carrier resolution ===")
for name in ["Delhivery Surface", "XpressBees Logistics", "Ecom Express", "UnknownCarrierXYZ"]:
    response = requests.get(f"{BASE_URL}/api/carriers/resolve", params={"name": name}, timeout=10)
    print(f"  {name!r} -> {response.json().get('carrier')}")

if AWB:
    print(f"\n=== Tracking state for {AWB} ===")
    response = requests.get(f"{BASE_URL}/api/track/{AWB}/state", timeout=10)
    print(response.status_code)
    if response.status_code == 200:
        for record in response.json().get("records", []):
            print(f"  {record['ownerType']} {record['ownerId']}: {record['trackingStatus']} "
                  f"(active={record['isTrackingActive']}, failures={record['failureCount']})")

print("\n=== Non-live reconciliation ===")
response = requests.post(f"{BASE_URL}/api/sync/run", json={"live": False}, timeout=300)
print(response.status_code, response.json())
