ROOM_TOPIC = "room:channel:{slug}" # room id - broadcast to every member
USER_QUEUE = "user:queue:{user_id}" # user id - point-to-point delivery

# Client-facing subscription destinations
TOPIC_ROOM_PREFIX = "/topic/room/"
USER_QUEUE_DESTINATION = "/user/queue"

# **Channel payloads**
# - JSON envelope: `{"type", "fromUserId", "toUserId", "data", "timestamp"}`
# - Room topics carry `user-joined`, `user-left`, `user-disconnected`
# - User queues carry `room-state`, `offer`, `answer`, `ice-candidate`, `error`
