# relay_sdk/router/__init__.py
# SPDX-License-Identifier: Apache-2.0
