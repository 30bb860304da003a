"""Core utilities and shared infrastructure.

- config: Configuration loading and validation
- constants: Unit conversions, CRS identifiers, nodata markers, output names
- exceptions: Pipeline exception taxonomy
"""
