"""Service layer: versioning, cascades, hierarchy and the entity store facade."""
