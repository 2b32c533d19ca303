"""HTTP API for flow validation, repair and refinement."""
