"""Tessera - sandboxed WebAssembly command plugins.

Tessera lets a command-line host load third-party commands compiled to
WebAssembly at run time. Every plugin runs inside a fuel-metered wasmtime
store with its own linear memory, and only sees the host resources an
operator (or a pre-seeded grant) allowed it to see.

Key modules:

- :mod:`tessera.protocol` - Wire codec, memory bridge and manifest types
- :mod:`tessera.sandbox` - wasmtime runtime with fuel, stack and timeout limits
- :mod:`tessera.permissions` - Strategies, grant store, prompts and trust flags
- :mod:`tessera.audit` - Append-only audit sinks for permission decisions
- :mod:`tessera.plugins` - Plugin registry, discovery and hot-reload watcher
- :mod:`tessera.config` - YAML configuration
"""

__version__ = "0.1.0"
