"""
List Service package for the Shopping Mesh.

Structure:
- app.main: FastAPI app and list/entry routes.
- app.summary: entry snapshots and derived list totals.
- app.catalog: item lookups against the catalog service.
- app.reconciler: consumer repairing cached item data after catalog changes.
"""
