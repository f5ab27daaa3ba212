REDIS_ROOM_MEMBERS_KEY = "room:members:{room_id}" # room id - list of JSON encoded members, join order
REDIS_CONN_ROOMS_KEY = "conn:rooms:{connection_id}" # connection id - set of room ids the connection is in
REDIS_CONN_KEY = "conn:{connection_id}" # connection id - connection metadata
REDIS_INSTANCE_CHANNEL = "gateway:channel:{instance_id}" # gateway instance - pub/sub channel for remote delivery

# **Example `conn:{id}` hash fields**
# - `instance_id` = gateway instance owning the websocket
# - `connected_at` = ISO timestamp
# - `user_id` = identity from `identify`, overwritten on every identify
#
# An empty Redis list is removed by Redis itself, so `room:members:{id}`
# exists exactly while the room has members.
