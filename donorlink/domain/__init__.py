# SPDX-License-Identifier: Apache-2.0

"""
Domain logic package for the donor-matching core.

This package contains the pure parts of matching: distance, blood-type
compatibility, eligibility rules, scoring and process state transitions.
Nothing here talks to a database or broker directly; repositories
and clocks are passed in.
"""
