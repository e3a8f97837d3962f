# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Custom type definitions for SimFitPy.

This module provides type aliases and unions used throughout the SimFitPy
package for type checking and documentation purposes.

All imports are conditional on TYPE_CHECKING to avoid circular imports while
maintaining proper type hints for development and documentation tools. Modules
likewise import this one only under TYPE_CHECKING, which means the runtime type
checker treats these aliases as unchecked.
"""

from typing import Callable, TYPE_CHECKING, Union

# Everything in this file is only imported if TYPE_CHECKING is True.
if TYPE_CHECKING:

    import numpy as np
    import numpy.typing as npt
    import torch

# Scalar types
Integer = Union[int, "np.integer"]
"""Type alias for integer values.

Accepts both Python's built-in int and NumPy integer types.

:type: Union[int, np.integer]
"""

Float = Union[float, "np.floating"]
"""Type alias for floating-point values.

Accepts both Python's built-in float and NumPy floating-point types.

:type: Union[float, np.floating]
"""

# Array-like inputs accepted wherever a parameter value is expected
ArrayLike = Union[int, float, "npt.NDArray", list, tuple]
"""Type alias for values that can be converted to a float array.

:type: Union[int, float, npt.NDArray, list, tuple]
"""

# Shapes may mix integers with dimension names resolved from the data
ShapeEntry = Union[int, str]
"""A single entry of a declared shape: a fixed size or a dimension name.

:type: Union[int, str]
"""

# Functions of parameters and data used by distributions and transformations
TensorFn = Callable[
    [dict[str, "torch.Tensor"], dict[str, "torch.Tensor"]], "torch.Tensor"
]
"""A deterministic function of parameters (first argument) and data (second
argument) that returns a tensor.

:type: Callable[[dict[str, torch.Tensor], dict[str, torch.Tensor]], torch.Tensor]
"""

DistributionArg = Union[int, float, str, "npt.NDArray", TensorFn]
"""An argument to a distribution declaration: a constant, the name of a
parameter or data field, or a :py:data:`TensorFn`.

:type: Union[int, float, str, npt.NDArray, TensorFn]
"""
