"""Единое место для peewee-Proxy локальной базы.

Вызывайте :func:`database.init.init_from_env` в начале entry-point'а.
"""

from peewee import Proxy

db = Proxy()
