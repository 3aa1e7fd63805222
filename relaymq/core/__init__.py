SERVICE_NAME = "relaymq"
