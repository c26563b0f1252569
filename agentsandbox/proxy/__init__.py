"""Request routing to sandboxes and route sharing between proxy peers."""