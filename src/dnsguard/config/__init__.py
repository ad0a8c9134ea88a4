from .config_parser import AppConfig, parse_config_file, parse_config_variables

__all__ = ["AppConfig", "parse_config_file", "parse_config_variables"]
