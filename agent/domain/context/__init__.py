# This module handles conversational memory and prompt context

#  +---------------------+
# |  Fragment memory    |   (Persistent, partitioned, cached)
# |---------------------|
# | Interactions        |
# | Personality         |
# | Insights            |
# +---------------------+

# +---------------------+
# |   Turn State        |   (One turn, keyed manager data)
# |---------------------|
# | Input fragment      |
# | Recent interactions |
# | Manager data        |
# +---------------------+

#    \    /
#     \  /
#      \/
# +------------------------------+
# |        PromptBuilder         |   (Composed per model call)
# |------------------------------|
# | System sections + data keys  |
# | Replayed interactions        |
# | Current input                |
# | Toolkits                     |
# +------------------------------+
#         |
#         v
#   [LLMClient / tool calls]
