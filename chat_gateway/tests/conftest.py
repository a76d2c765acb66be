import os

# 测试期间不写 logs/gateway.log，也不读取开发者本地的 config.yaml
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("GATEWAY_CONFIG_FILE", os.devnull)
