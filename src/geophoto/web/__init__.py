"""HTTP surface for the GeoPhoto pipeline."""
