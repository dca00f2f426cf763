# SPDX-License-Identifier: Apache-2.0

"""
DonorLink donor-matching service.

Coordinates emergency blood requests with eligible donors through a
geospatially-aware, scored and escalating notification scheduler.
"""

__version__ = "1.0.0"
