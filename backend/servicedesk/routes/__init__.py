from importlib import import_module

modules = [
    'cases',
    'notifications',
    'admin',
    'realtime',
]

for m in modules:
    import_module(f'.{m}', __name__)

__all__ = modules
