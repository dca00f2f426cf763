# SPDX-License-Identifier: Apache-2.0

"""
HTTP routes for matching administration and health.
"""
