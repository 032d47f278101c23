# SPDX-License-Identifier: Apache-2.0

"""
Middleware package for request processing and error translation.
"""
