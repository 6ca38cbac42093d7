"""Quantum Snap: candid photo albums of one person, synthesized by Gemini.

The package is organised bottom-up:

- ``qsnap.core``: data models, errors, asset store, crop queue, state machine, archive
- ``qsnap.storage``: key/value persistence port and legacy schema normalisation
- ``qsnap.ai``: Gemini client, prompts, identity analysis, album generation
- ``qsnap.session``: the orchestrating session context
- ``qsnap.cli``: the ``qsnap`` command
"""

__version__ = "1.0.0"
