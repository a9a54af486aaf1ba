"""
Page handlers and their view models.

Each handler receives a ``TemplateRenderer`` whose template was validated
against the handler's view model when the route was registered.
"""
