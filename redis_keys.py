REDIS_ROOMS_KEY = "rooms" # set of room names
REDIS_ROOM_META_KEY = "room:meta:{room}" # room name - hash
REDIS_ROOM_MESSAGES_KEY = "room:messages:{room}" # room name - list of message ids, oldest first
REDIS_DM_MESSAGES_KEY = "dm:messages:{pair}" # "a::b" sorted usernames - list of message ids
REDIS_MESSAGE_KEY = "message:{message_id}" # message id - json blob
REDIS_MESSAGE_READERS_KEY = "message:readers:{message_id}" # message id - ordered list of readers
REDIS_MESSAGE_READERS_SET_KEY = "message:readers_set:{message_id}" # message id - set of readers
REDIS_MESSAGE_SEQ_KEY = "message:seq" # counter for message ids
REDIS_USER_KEY = "user:{username}" # username - hash

# **Example `room:meta:{room}` hash fields**
# - `name` = room name
# - `created_at` = ISO timestamp

# **Example `user:{username}` hash fields**
# - `username` = username
# - `connection_id` = last connection id, empty once offline
# - `last_active` = ISO timestamp
