# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Command-line pipelines for single trials and calibration studies."""
