#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Configuration base class"""

from __future__ import annotations

import os
import json

from ..internal_types import *
from .context import ConfigContext

_T = TypeVar('_T')

class Config:
    """A configuration loaded from (templated) JSON.

    Subclasses read their settings in bake(), using the typed get_cfg_property_*() getters on
    the rendered JSON data."""

    _template_json_data: Optional[JsonableDict] = None
    _json_data: Optional[JsonableDict] = None
    _context: Optional[ConfigContext] = None

    _no_default: Any = object()

    def get_context(self) -> ConfigContext:
        result = self._context
        assert not result is None
        return result

    def bake(self) -> None:
        pass

    @property
    def config_file(self) -> Optional[str]:
        """The fully qualified pathname of the configuration file from which this Config
           originated, or None if not from a file"""
        return None if self._context is None else self._context.config_file

    @property
    def config_dir(self) -> Optional[str]:
        config_file = self.config_file
        return None if config_file is None else os.path.dirname(config_file)

    def render(self) -> None:
        rendered = self.get_context().render_template_json_data(self._template_json_data)
        if not isinstance(rendered, dict):
            raise TypeError(f"Config: Expected rendered config data to be dict, got {type(rendered)}")
        self._json_data = rendered

    def render_and_bake(self, context: ConfigContext) -> None:
        self._context = context.clone()
        self.render()
        self.bake()

    def loads(self, ctx: ConfigContext, config_text: str) -> None:
        data = json.loads(config_text)
        if not isinstance(data, dict):
            raise TypeError(f"Config: Expected config data to be dict, got {type(data)}")
        self._template_json_data = data
        self.render_and_bake(ctx)

    def load_json_data(self, ctx: ConfigContext, json_data: JsonableDict) -> None:
        self.loads(ctx, json.dumps(json_data))

    @overload
    def get_cfg_property(self, key: str, default: _T) -> Union[Jsonable, _T]: ...
    @overload
    def get_cfg_property(self, key: str) -> Jsonable: ...
    def get_cfg_property(self, key: str, default: Any=_no_default) -> Any:
        if not isinstance(self._json_data, dict):
            raise TypeError(f"Config: Expected config data to be dict, got {type(self._json_data)}")
        result = self._json_data.get(key, default)
        if result is self._no_default:
            raise KeyError(f"Config: Property {key} does not exist and has no default")
        return result

    @overload
    def get_cfg_property_str(self, key: str, default: _T) -> Union[str, _T]: ...
    @overload
    def get_cfg_property_str(self, key: str) -> str: ...
    def get_cfg_property_str(self, key: str, default: Any=_no_default) -> Any:
        result = self.get_cfg_property(key, default)
        if result is not default and not isinstance(result, str):
            raise TypeError(f"Config: Expected property {key} to be str, got {type(result)}")
        return result

    @overload
    def get_cfg_property_int(self, key: str, default: _T) -> Union[int, _T]: ...
    @overload
    def get_cfg_property_int(self, key: str) -> int: ...
    def get_cfg_property_int(self, key: str, default: Any=_no_default) -> Any:
        result = self.get_cfg_property(key, default)
        if result is default:
            return result
        if isinstance(result, str):
            try:
                result = int(result)
            except ValueError:
                pass
        if isinstance(result, bool) or not isinstance(result, int):
            raise TypeError(f"Config: Expected property {key} to be int, got {type(result)}")
        return result

    @overload
    def get_cfg_property_float(self, key: str, default: _T) -> Union[float, _T]: ...
    @overload
    def get_cfg_property_float(self, key: str) -> float: ...
    def get_cfg_property_float(self, key: str, default: Any=_no_default) -> Any:
        result = self.get_cfg_property(key, default)
        if result is default:
            return result
        if isinstance(result, str):
            try:
                result = float(result)
            except ValueError:
                pass
        if isinstance(result, bool) or not isinstance(result, (int, float)):
            raise TypeError(f"Config: Expected property {key} to be a number, got {type(result)}")
        return float(result)

    @overload
    def get_cfg_property_str_list(self, key: str, default: _T) -> Union[List[str], _T]: ...
    @overload
    def get_cfg_property_str_list(self, key: str) -> List[str]: ...
    def get_cfg_property_str_list(self, key: str, default: Any=_no_default) -> Any:
        """Returns a list of strings. A single string is accepted as a one-element list."""
        result = self.get_cfg_property(key, default)
        if result is default:
            return result
        if isinstance(result, str):
            result = [ result ]
        if not isinstance(result, list) or not all(isinstance(x, str) for x in result):
            raise TypeError(f"Config: Expected property {key} to be a list of str, got {type(result)}")
        return list(result)

    @overload
    def get_cfg_property_dict(self, key: str, default: _T) -> Union[JsonableDict, _T]: ...
    @overload
    def get_cfg_property_dict(self, key: str) -> JsonableDict: ...
    def get_cfg_property_dict(self, key: str, default: Any=_no_default) -> Any:
        result = self.get_cfg_property(key, default)
        if result is not default and not isinstance(result, dict):
            raise TypeError(f"Config: Expected property {key} to be dict, got {type(result)}")
        return result
