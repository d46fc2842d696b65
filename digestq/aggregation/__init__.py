"""Window assignment and the periodic window aggregator."""
