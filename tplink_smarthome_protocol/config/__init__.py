#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

from .base import Config
from .context import ConfigContext
from .client_config import ClientConfig
