import os

import yaml


def load_config(section=None, file_path=None):
    """
    加载 YAML 配置文件，并返回指定部分配置
    :param section: 配置块名称，例如 'capture'；不存在时返回 {}
    :param file_path: 配置文件路径；相对路径以项目根目录为基准
    """
    if file_path is None:
        raise ValueError("load_config 需要 file_path")
    if os.path.isabs(file_path):
        config_file = file_path
    else:
        config_path = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        config_file = os.path.join(config_path, file_path)
    with open(config_file, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        raise ValueError(f"配置文件顶层必须是映射: {config_file}")
    if section:
        return config.get(section) or {}
    return config
