# The engine is reached through services and the websocket channel; HTTP routes
# belong to the API layer that embeds it.
urlpatterns = []
