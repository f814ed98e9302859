# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Scheduled maintenance jobs for virtual machine fleets."""

__version__ = "1.0.0"
