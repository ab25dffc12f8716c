#!/usr/bin/env python3
"""
检查运行依赖可用性

CI 脚本：验证 openai-flux 的运行依赖是否正确安装。

检查流程:
    1. 逐一尝试导入 LIBS 列表中的库
    2. 成功则打印版本号，失败则记录到 missing 列表
    3. 有依赖缺失时输出警告到 stderr 并以非零状态退出
"""
import sys

# (导入名, 分发包名)
LIBS = [("aiohttp", "aiohttp"), ("pydantic", "pydantic"), ("yaml", "pyyaml")]

missing = []
for module_name, dist_name in LIBS:
    try:
        mod = __import__(module_name)
        version = getattr(mod, "__version__", getattr(mod, "VERSION", "N/A"))
        print(f"✓ {dist_name} {version}")
    except ModuleNotFoundError:
        print(f"✗ {dist_name} (missing)")
        missing.append(dist_name)

if missing:
    print(f"⚠️  缺少依赖: {', '.join(missing)}，请执行 pip install -e .", file=sys.stderr)
    sys.exit(1)
