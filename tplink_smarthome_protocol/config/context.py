#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Configuration context: the variables available to config templates, and config loading."""

from __future__ import annotations

import os
import json
import importlib
from collections import UserDict
from copy import deepcopy
from string import Template

from ..internal_types import *
from ..util import full_name_of_type, full_type, hash_pathname as g_hash_pathname

if TYPE_CHECKING:
    from .base import Config

_Config = TypeVar('_Config', bound='Config')

class ConfigTemplate(Template):
    """A string.Template whose variable names may contain ":", so that "${env:HOME}" works."""
    idpattern = r'(?a:[_a-z][_a-z0-9:]*)'

class ConfigContext(UserDict):  # type: ignore[type-arg]
    """A dict of template variables. Every environment variable is available as "env:<name>", and
       "config_file"/"config_dir" are set while a file is being loaded.

       Config text may reference variables as ${name}; they are substituted before the JSON is baked."""

    def __init__(self, globals: Optional[Dict[str, Any]]=None, os_environ: Optional[Mapping[str, str]]=None):
        super().__init__()
        if not globals is None:
            self.update(deepcopy(globals))
        if os_environ is None:
            os_environ = dict(os.environ)
        for k, v in os_environ.items():
            self[f"env:{k}"] = v

    def clone(self) -> ConfigContext:
        return deepcopy(self)

    def render_template_str(self, template_str: str) -> str:
        return ConfigTemplate(template_str).substitute(self)

    def render_template_json_data(self, template_json_data: Jsonable) -> Jsonable:
        json_text = self.render_template_str(json.dumps(template_json_data))
        result: Jsonable = json.loads(json_text)
        return result

    @overload
    def instantiate_config(self, class_name: str) -> Config: ...
    @overload
    def instantiate_config(self, class_name: str, required_type: Optional[Type[_Config]]) -> _Config: ...
    def instantiate_config(self, class_name: str, required_type: Optional[Type[Config]]=None) -> Config:
        """Creates an empty Config of the named class. Unqualified names are looked up in this config package."""
        from .base import Config
        if required_type is None:
            required_type = Config
        class_parts = class_name.rsplit('.', 1)
        if len(class_parts) > 1:
            module_name, class_tail = class_parts
        else:
            from .. import config as config_module
            module_name = config_module.__name__
            class_tail = class_name
        module = importlib.import_module(module_name)
        klass = getattr(module, class_tail)
        if not isinstance(klass, type) or not issubclass(klass, required_type):
            raise TypeError(f"Config: {class_name} is not a subclass of required type {full_name_of_type(required_type)}")
        return klass()

    def hash_pathname(self, pathname: str) -> str:
        return g_hash_pathname(pathname)

    def push_config_file(self, config_file: Optional[str]) -> ConfigContext:
        ctx = self.clone()
        ctx.set_config_file(config_file)
        return ctx

    def set_config_file(self, config_file: Optional[str]=None) -> None:
        if config_file is None:
            for propname in ('config_file', 'config_dir', 'config_file_hash'):
                self.pop(propname, None)
        else:
            config_file = os.path.abspath(os.path.expanduser(config_file))
            self['config_file'] = config_file
            self['config_dir'] = os.path.dirname(config_file)
            self['config_file_hash'] = self.hash_pathname(config_file)

    @property
    def config_file(self) -> Optional[str]:
        return self.get('config_file', None)

    @property
    def config_dir(self) -> Optional[str]:
        return self.get('config_dir', None)

    @overload
    def load_json_data(self, data: Jsonable) -> Config: ...
    @overload
    def load_json_data(self, data: Jsonable, required_type: Optional[Type[_Config]]) -> _Config: ...
    def load_json_data(self, data: Jsonable, required_type: Optional[Type[Config]]=None) -> Config:
        """Loads a Config from parsed JSON.

        Two shapes are accepted:
            {"cfg_class": "ClientConfig", "version": "0.1.0", "data": {...}}
            {...}   (bare settings, loaded into required_type, or ClientConfig if not given)
        """
        if not isinstance(data, dict):
            raise ValueError(f"ConfigContext: expected json dict, got {full_type(data)}")
        if 'cfg_class' in data:
            self._check_version(data.get('version'))
            cfg_class_name = data['cfg_class']
            if not isinstance(cfg_class_name, str):
                raise ValueError(f"ConfigContext: expected str cfg_class, got {full_type(cfg_class_name)}")
            cfg_data = data.get('data', {})
            if not isinstance(cfg_data, dict):
                raise ValueError(f"ConfigContext: expected dict data, got {full_type(cfg_data)}")
            cfg = self.instantiate_config(cfg_class_name, required_type=required_type)
        else:
            if required_type is None:
                from .client_config import ClientConfig
                required_type = ClientConfig
            cfg = required_type()
            cfg_data = data
        cfg.load_json_data(self, cfg_data)
        return cfg

    def _check_version(self, version_s: Any) -> None:
        if version_s is None:
            return
        if not isinstance(version_s, str):
            raise ValueError(f"ConfigContext: expected str version, got {full_type(version_s)}")
        from ..version import __version__ as my_version_s
        version = tuple(int(x) for x in version_s.split('.'))
        my_version = tuple(int(x) for x in my_version_s.split('.'))
        if version > my_version:
            raise ValueError(f"ConfigContext: configuration version {version_s} is newer than package version {my_version_s}")

    @overload
    def loads(self, s: str) -> Config: ...
    @overload
    def loads(self, s: str, required_type: Optional[Type[_Config]]) -> _Config: ...
    def loads(self, s: str, required_type: Optional[Type[Config]]=None) -> Config:
        return self.load_json_data(json.loads(s), required_type=required_type)

    @overload
    def load_stream(self, stream: TextIO) -> Config: ...
    @overload
    def load_stream(self, stream: TextIO, required_type: Optional[Type[_Config]]) -> _Config: ...
    def load_stream(self, stream: TextIO, required_type: Optional[Type[Config]]=None) -> Config:
        return self.loads(stream.read(), required_type=required_type)

    @overload
    def load_file(self, config_file: str) -> Config: ...
    @overload
    def load_file(self, config_file: str, required_type: Optional[Type[_Config]]) -> _Config: ...
    def load_file(self, config_file: str, required_type: Optional[Type[Config]]=None) -> Config:
        ctx = self.push_config_file(config_file)
        with open(os.path.expanduser(config_file)) as f:
            return ctx.load_stream(f, required_type=required_type)
