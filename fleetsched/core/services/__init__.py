# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Scheduler services: selector resolution, trigger runtime and engine."""
