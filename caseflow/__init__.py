"""
CaseFlow — Case Lifecycle Engine for scanned vendor bills (v1.0.0)

Architecture:
  caseflow/
  ├── config/        — Constants, feature flags, case states, field weights, profiles
  ├── policy/        — Routing policy state, presets, runtime configuration
  ├── errors/        — Error taxonomy
  ├── log/           — Logging setup
  ├── db/            — Case store with per-case locks, JSON file persistence
  ├── masks/         — Mask registry: case and vendor noise-exclusion regions
  ├── triage/        — Confidence policy evaluator (AUTO_APPROVE / REVIEW)
  ├── documents/     — Extraction normalization, field validation, decisions
  ├── cases/         — Case lifecycle state machine
  ├── retry/         — Retry scheduler, processing time estimate
  ├── review_queue/  — Queue projections, filters, stats
  ├── export/        — Idempotent export gate, exporters
  ├── extraction/    — OCR engine adapters (Claude, mock)
  ├── auth/          — JWT, roles, audit actor
  ├── workflow/      — CaseEngine: wires the above to the store, OCR and export
  └── server.py      — FastAPI routing layer

Each module is self-contained with clear imports and no circular dependencies.
"""
