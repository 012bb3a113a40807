"""
Simple simulator: walk one Ashwagandha batch through the whole chain.
Run:
    python scripts/simulate_supply_chain.py
"""
import os
import time

import requests

API = os.getenv("API_URL", "http://localhost:8000")


def main():
    r = requests.post(f"{API}/api/farmer/collections", json={
        "species": "Ashwagandha",
        "gps": {"lat": 26.9124, "lng": 75.7873},
        "harvested_at": "2025-01-15T08:30:00Z",
        "moisture": 12.5,
        "farmer_name": "Ram Kumar Sharma",
        "farmer_id": "FARMER_001",
    })
    print("collection:", r.status_code, r.text)
    r.raise_for_status()
    batch_id = r.json()["batch_id"]

    r = requests.post(f"{API}/api/lab/tests", json={
        "batch_id": batch_id,
        "dna": "ATCGATCGATCGATCG",
        "pesticide_ppm": 0.03,
        "moisture": 12.5,
        "heavy_metals_ppm": 0.01,
        "lab_name": "Ayurveda Quality Labs Pvt Ltd",
        "lab_id": "LAB_AQL_001",
    })
    print("quality test:", r.status_code, r.text)

    for stage in ("drying", "grinding", "packaging"):
        for status in ("in-progress", "completed"):
            rr = requests.post(f"{API}/api/processor/update-status", json={
                "batch_id": batch_id,
                "stage": stage,
                "status": status,
                "processor_id": "PROC_HWC_001",
                "processor_name": "Himalaya Wellness Company",
            })
            print(stage, status, rr.status_code)
            time.sleep(0.5)

    rr = requests.post(f"{API}/api/processor/generate-qr", json={
        "batch_id": batch_id,
        "processor_id": "PROC_HWC_001",
    })
    print("qr:", rr.status_code, rr.text)

    rr = requests.get(f"{API}/api/customer/batch/{batch_id}")
    print("provenance:", rr.status_code, rr.json()["verification"])


if __name__ == "__main__":
    main()
