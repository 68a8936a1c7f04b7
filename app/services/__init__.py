# Services package.
#
# Each module exposes a focused set of async functions for one concern:
#
#   slugs               — slug generation (pure)
#   tag_service         — article <-> tag-name association
#   annotation_service  — viewer-relative favorited / following flags
#   article_service     — article lifecycle + projections + list views
#   user_service        — viewer / author lookup
#
# All service functions accept an AsyncSession as their first argument
# so that the router layer controls the transaction boundary via the
# ``get_db`` dependency.
