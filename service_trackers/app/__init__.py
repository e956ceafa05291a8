"""
Tracker Studio service package.

This package owns the permission and entitlement resolution for Tracker
Studio together with the generic tracker engine it gates:

- app.main: HTTP surface for templates, trackers, entries, sharing, reminders.
- app.permissions: Role algebra, grant/observation resolvers, the permission
  resolution engine and the enforcement layer.
- app.tracker: Field schema and entry value validation, typed field values.
- app.services: Template, tracker, entry, sharing, reminder and context
  services. Each mutation runs resolve -> validate -> persist.
- app.analytics: Analytics data shaping over tracker entries.
- app.cache: Insights cache (in-memory or Redis) invalidated on entry writes.
- app.store: Collaborator interfaces plus in-memory and PostgreSQL stores.

Guidelines:
- The enforcement layer is the sole authority; no store performs ACL checks.
- Permission decisions are never cached; they are resolved on every call.
"""
