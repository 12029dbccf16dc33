# src/core/__init__.py
"""
Доменный слой: тарифы, переходы статусов, формула возврата.
Чистая бизнес-логика; ввод-вывод только в repository/service модулях.
"""
