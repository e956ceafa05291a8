"""
Permission resolution package.

Combines ownership, time-scoped sharing grants, consent-based observation
links and archival state into a single access decision per
(entity, principal, optional context).

Modules of interest:
- roles: Role ordering, max/ceiling helpers and role-to-flag mapping.
- models: Permissions and EntityPermissions decision records.
- grants: Direct and group grant lookup (highest active role).
- observation: Context-scoped observation link lookup.
- resolver: The resolution engine for trackers and templates, and the
  project-ceiling resolver for tracks/subtracks.
- enforcement: Capability checks every service operation goes through.
"""
