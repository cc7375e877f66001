from sqlalchemy.orm import declarative_base

# Content tables (inventory, rentals, mail queue) and the member directory
# live in separate databases, so each gets its own metadata.
Base = declarative_base()
UserBase = declarative_base()
