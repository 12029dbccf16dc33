#!/usr/bin/env python3
"""
Entrypoint для Payments Service.

Запуск:
    python entrypoint_payments_service.py

Порт по умолчанию: 8087
"""

import asyncio
import sys
from pathlib import Path

# Добавляем корневую директорию проекта в путь
project_root = Path(__file__).parent.parent.resolve()
sys.path.insert(0, str(project_root))

from main import main


if __name__ == "__main__":
    try:
        asyncio.run(main(mode="payments_service"))
    except KeyboardInterrupt:
        pass
