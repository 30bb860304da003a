"""Pipeline stages.

Each stage performs one step of a forest agreement run:
- resolve_region: Load geodata or an ROI, buffer points, build clusters
- reclassify: Fetch a dataset and turn it into an aligned binary mask
- agreement: Sum the masks and sieve patches below the MMU
- statistics: UTM selection, pixel areas, extent ranking, polygon checks
- export: Split the agreement raster into cluster or tile exports
- report: Output tables and the run summary
"""
