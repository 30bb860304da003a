"""Run orchestration.

Coordinates the end-to-end workflow of one forest agreement run:
1. Resolve the region → reference grid
2. Fan-out per dataset → forest masks
3. Combine + sieve → agreement raster
4. Fan-out statistics and exports → collect outcomes + write the summary
"""
