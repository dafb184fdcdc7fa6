"""
AI Credit Gateway service package.

The gateway fronts a shared, metered AI provider, enforcing:
- Resource resolution: which tenant owns a project id
- Admission control: fixed-window minute and day budgets per plan tier
- Metering: credit charges against a per-tenant ledger
- Privilege: owners and superadmins bypass quota and billing

Structure:
- app.main: FastAPI app, routes and lifecycle wiring.
- app.adapters: HTTP client for the external provider.
- app.storage: Document store interface with memory and Redis backends.
- app.ratelimit: Fixed-window admission controller.
- app.metering: Price table, operation classification, usage ledger.
- app.domain: Resolver, privilege oracle, validation and handlers.
"""
