#!/usr/bin/env python3
"""Demo-Request: lädt ein kleines Manuskript hoch, startet eine Revision und pollt den Status."""

import json
import sys
import time

import requests

BASE_URL = "http://localhost:8000"
PROJECT_ID = 1

units = {
    0: ("Prolog", "Die Stadt schlief noch, als Marta das Haus verließ."),
    1: ("Der Brief", "Marta fand den Brief unter der Tür. Er war von ihrem Bruder Tomás, der seit Jahren tot war."),
    2: ("Die Reise", "Tomás wartete am Bahnhof auf sie und winkte."),
    -1: ("Epilog", "Am Ende blieb nur das Meer."),
}

try:
    for unit_id, (title, content) in units.items():
        r = requests.put(
            f"{BASE_URL}/projects/{PROJECT_ID}/units/{unit_id}",
            json={"title": title, "content": content},
            timeout=30,
        )
        r.raise_for_status()

    response = requests.post(
        f"{BASE_URL}/projects/{PROJECT_ID}/revision-runs",
        json={"parameters": {"max_cycles": 5}},
        timeout=30,
    )
    response.raise_for_status()
    run = response.json()
except requests.exceptions.ConnectionError:
    print(f"❌ Server nicht erreichbar unter {BASE_URL}")
    print("   Bitte starten Sie den Server mit: uvicorn app.server:app")
    sys.exit(1)
except Exception as e:
    print(f"❌ Fehler: {e}")
    sys.exit(1)

print("=" * 70)
print(f"Run {run['run_id']} gestartet (Status: {run['status']})")
print("=" * 70)

ACTIVE = {"pending", "reviewing", "classifying", "correcting", "validating"}
while run["status"] in ACTIVE:
    time.sleep(2)
    run = requests.get(f"{BASE_URL}/revision-runs/{run['run_id']}", timeout=30).json()
    print(f"  Zyklus {run['current_cycle']}: {run['status']}")

print("=" * 70)
print(f"ERGEBNIS: {run['status']} (final score: {run['final_score']})")
print("=" * 70)
for rec in run["cycle_history"]:
    print(f"  Zyklus {rec['cycle']}: score={rec['score']} -> {rec['result']}")
print()
print("Letzte Log-Einträge:")
for entry in run["progress_log"][-5:]:
    print(f"  [{entry['phase']}] {entry['message']}")

state = requests.get(f"{BASE_URL}/projects/{PROJECT_ID}/state", timeout=30).json()
print()
print(json.dumps(state["correction_counts"], indent=2))
