"""API router subpackage for the classification service.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance.

Submodules:
    - imports: Upload datasets and run them through the pipeline.
    - matches: Review, recheck and manually merge pending matches.
    - collections: List collections, their bounding boxes and sources,
      and drop collections.
"""
