"""Portal session and step-up authentication pipeline.

Import the pipeline through the ``backend`` namespace, e.g.
``backend.portal.app``.
"""
